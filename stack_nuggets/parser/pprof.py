"""Decoder for binary goroutine profiles (``/debug/pprof/goroutine?debug=0``).

The profile is a gzip-wrapped ``perftools.profiles.Profile`` protobuf. Only
the handful of fields needed to rebuild call stacks are read, straight off the
wire, so no generated protobuf code is required.

Goroutine profiles written with per-goroutine labels carry a few synthetic
labels that are not user labels at all:

    goroutine     (num) goroutine id
    created_by    (num) id of the creating goroutine
    state         (str) wait state
    wait_minutes  (num) time spent blocked

These are lifted out of the label set into the Goroutine they describe.
"""

from __future__ import annotations

import gzip
import json
import logging
import struct
import zlib
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from stack_nuggets.parser.names import NameExtractionPattern, NameExtractor
from stack_nuggets.parser.types import (
    DecodeError,
    Frame,
    Goroutine,
    Group,
    ParsedFile,
    fingerprint,
)


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

GZIP_MAGIC = b"\x1f\x8b"

WIRE_BYTES = 2

GOROUTINE_LABEL = "goroutine"
CREATED_BY_LABEL = "created_by"
STATE_LABEL = "state"
WAIT_LABEL = "wait_minutes"
SYNTHETIC_LABELS = frozenset({GOROUTINE_LABEL, CREATED_BY_LABEL, STATE_LABEL, WAIT_LABEL})

PARKED = "parked"

# Leaf frames that only say how a goroutine is blocked, not where.
BLOCKING_FRAMES = {
    "runtime.gopark": PARKED,
    "runtime.goparkunlock": PARKED,
    "runtime.chanrecv": "chan receive",
    "runtime.chanrecv1": "chan receive",
    "runtime.chanrecv2": "chan receive",
    "runtime.chansend": "chan send",
    "runtime.chansend1": "chan send",
    "runtime.selectgo": "select",
    "runtime.block": "select (no cases)",
    "runtime.semacquire1": "semacquire",
    "sync.runtime_SemacquireMutex": "semacquire",
    "sync.runtime_SemacquireRWMutex": "semacquire",
    "sync.runtime_SemacquireRWMutexR": "semacquire",
    "sync.runtime_Semacquire": "semacquire",
    "sync.runtime_notifyListWait": "wait",
    "runtime.netpollblock": "IO wait",
    "internal/poll.runtime_pollWait": "IO wait",
    "time.Sleep": "sleep",
}


def read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Read a base-128 varint at ``pos``; returns (value, new_pos)."""
    result = 0
    shift = 0
    while pos < len(data):
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not b & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise DecodeError("varint too long")
    raise DecodeError("truncated varint")


def iter_fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield (field_number, wire_type, value) for every field of a message.

    Varint and fixed-width values come back as ints, length-delimited ones as
    bytes.
    """
    pos = 0
    end = len(data)
    while pos < end:
        key, pos = read_varint(data, pos)
        field_number, wire_type = key >> 3, key & 0x7
        if field_number == 0:
            raise DecodeError("invalid field number 0")
        match wire_type:
            case 0:
                value, pos = read_varint(data, pos)
            case 1:
                if pos + 8 > end:
                    raise DecodeError("truncated fixed64 field")
                (value,) = struct.unpack_from("<Q", data, pos)
                pos += 8
            case 2:
                length, pos = read_varint(data, pos)
                if pos + length > end:
                    raise DecodeError(f"truncated length-delimited field {field_number}")
                value = bytes(data[pos : pos + length])
                pos += length
            case 5:
                if pos + 4 > end:
                    raise DecodeError("truncated fixed32 field")
                (value,) = struct.unpack_from("<I", data, pos)
                pos += 4
            case _:
                raise DecodeError(f"unsupported wire type {wire_type}")
        yield field_number, wire_type, value


def _repeated_ints(wire_type: int, value: int | bytes) -> list[int]:
    """Repeated integer fields may be packed or one value per tag."""
    if wire_type == WIRE_BYTES:
        out = []
        pos = 0
        while pos < len(value):
            v, pos = read_varint(value, pos)
            out.append(v)
        return out
    return [value]


def _message(wire_type: int, value: int | bytes, what: str) -> bytes:
    if wire_type != WIRE_BYTES:
        raise DecodeError(f"{what} is not length-delimited")
    return value


def _number(wire_type: int, value: int | bytes, what: str) -> int:
    if wire_type == WIRE_BYTES:
        raise DecodeError(f"{what} is not a number")
    return value


def _signed(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


@dataclass
class _Label:
    key_index: int = 0
    str_index: int = 0
    num: int = 0


@dataclass
class _Sample:
    location_ids: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)
    labels: list[_Label] = field(default_factory=list)


@dataclass
class Profile:
    """The subset of a pprof Profile needed to rebuild goroutine stacks."""

    strings: list[str] = field(default_factory=list)
    samples: list[_Sample] = field(default_factory=list)
    functions: dict[int, tuple[int, int]] = field(default_factory=dict)
    locations: dict[int, list[tuple[int, int]]] = field(default_factory=dict)
    comments: list[int] = field(default_factory=list)
    sample_types: list[tuple[int, int]] = field(default_factory=list)

    def string(self, index: int) -> str:
        if 0 <= index < len(self.strings):
            return self.strings[index]
        raise DecodeError(f"string index {index} out of range")

    def frames(self, location_id: int) -> list[Frame]:
        lines = self.locations.get(location_id)
        if lines is None:
            raise DecodeError(f"unknown location id {location_id}")
        frames = []
        for function_id, line in lines:
            function = self.functions.get(function_id)
            if function is None:
                raise DecodeError(f"unknown function id {function_id}")
            name, filename = function
            frames.append(Frame(self.string(name), self.string(filename), line))
        return frames


def _decode_label(data: bytes) -> _Label:
    label = _Label()
    for num, wire_type, value in iter_fields(data):
        if num == 1:
            label.key_index = _number(wire_type, value, "label key")
        elif num == 2:
            label.str_index = _number(wire_type, value, "label string")
        elif num == 3:
            label.num = _signed(_number(wire_type, value, "label number"))
    return label


def _decode_sample(data: bytes) -> _Sample:
    sample = _Sample()
    for num, wire_type, value in iter_fields(data):
        if num == 1:
            sample.location_ids.extend(_repeated_ints(wire_type, value))
        elif num == 2:
            sample.values.extend(_signed(v) for v in _repeated_ints(wire_type, value))
        elif num == 3:
            sample.labels.append(_decode_label(_message(wire_type, value, "sample label")))
    return sample


def _decode_location(data: bytes) -> tuple[int, list[tuple[int, int]]]:
    location_id = 0
    lines = []
    for num, wire_type, value in iter_fields(data):
        if num == 1:
            location_id = _number(wire_type, value, "location id")
        elif num == 4:
            function_id = line = 0
            for line_num, line_wire_type, line_value in iter_fields(
                _message(wire_type, value, "location line")
            ):
                if line_num == 1:
                    function_id = _number(line_wire_type, line_value, "line function id")
                elif line_num == 2:
                    line = _signed(_number(line_wire_type, line_value, "line number"))
            lines.append((function_id, line))
    return location_id, lines


def _decode_function(data: bytes) -> tuple[int, int, int]:
    function_id = name = filename = 0
    for num, wire_type, value in iter_fields(data):
        if num == 1:
            function_id = _number(wire_type, value, "function id")
        elif num == 2:
            name = _number(wire_type, value, "function name")
        elif num == 4:
            filename = _number(wire_type, value, "function file name")
    return function_id, name, filename


def decode_profile(data: bytes) -> Profile:
    """Decode (optionally gzipped) profile bytes.

    Raises:
        DecodeError: on truncated or otherwise corrupt input.
    """
    if data[:2] == GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise DecodeError(f"invalid gzip data: {e}") from e

    profile = Profile()
    for num, wire_type, value in iter_fields(data):
        match num:
            case 1:
                sample_type = {
                    n: _number(w, v, "sample type")
                    for n, w, v in iter_fields(_message(wire_type, value, "sample type"))
                    if n in (1, 2)
                }
                profile.sample_types.append((sample_type.get(1, 0), sample_type.get(2, 0)))
            case 2:
                profile.samples.append(_decode_sample(_message(wire_type, value, "sample")))
            case 4:
                location_id, lines = _decode_location(_message(wire_type, value, "location"))
                profile.locations[location_id] = lines
            case 5:
                function_id, name, filename = _decode_function(
                    _message(wire_type, value, "function")
                )
                profile.functions[function_id] = (name, filename)
            case 6:
                if wire_type != WIRE_BYTES:
                    raise DecodeError("string table entry is not length-delimited")
                profile.strings.append(value.decode("utf-8", errors="replace"))
            case 13:
                profile.comments.extend(_repeated_ints(wire_type, value))

    if not profile.strings or profile.strings[0] != "":
        raise DecodeError("profile string table must start with an empty string")
    return profile


def _strip_blocking_frames(trace: list[Frame]) -> tuple[list[Frame], str | None]:
    """Drop leading runtime blocking frames; returns the trimmed trace and implied state."""
    state = None
    while trace and trace[0].func in BLOCKING_FRAMES:
        implied = BLOCKING_FRAMES[trace[0].func]
        if state is None or (state == PARKED and implied != PARKED):
            state = implied
        trace = trace[1:]
    return trace, state


def parse_profile(
    data: bytes,
    file_name: str,
    name_patterns: Sequence[NameExtractionPattern] = (),
) -> ParsedFile:
    profile = decode_profile(data)
    if profile.sample_types:
        type_idx, unit_idx = profile.sample_types[0]
        logger.debug(
            "%s: sample type %s/%s",
            file_name,
            profile.string(type_idx),
            profile.string(unit_idx),
        )

    extractor = NameExtractor(name_patterns)
    for index in profile.comments:
        extractor.feed(profile.string(index))

    groups: dict[tuple, Group] = {}
    goroutines: list[Goroutine] = []
    for sample in profile.samples:
        goroutine_id = creator_id = None
        state = None
        wait = 0.0
        labels = {}
        for label in sample.labels:
            key = profile.string(label.key_index)
            text = profile.string(label.str_index) if label.str_index else None
            if key == GOROUTINE_LABEL:
                goroutine_id = label.num
            elif key == CREATED_BY_LABEL:
                creator_id = label.num
            elif key == STATE_LABEL:
                state = text or None
            elif key == WAIT_LABEL:
                wait = float(label.num)
            else:
                labels[key] = text if text is not None else str(label.num)
        if labels:
            extractor.feed(f"# labels: {json.dumps(labels, separators=(',', ':'))}")

        trace = []
        for location_id in sample.location_ids:
            trace.extend(profile.frames(location_id))
        if state is None:
            trace, state = _strip_blocking_frames(trace)
        state = state or "unknown"
        trace = tuple(trace)

        sorted_labels = tuple(sorted(f"{k}={v}" for k, v in labels.items()))
        key = (tuple(sample.location_ids), state, sorted_labels)
        group = groups.get(key)
        if group is None:
            group = groups[key] = Group(
                trace=trace,
                count=0,
                state=state,
                labels=sorted_labels,
                trace_id=fingerprint(trace),
            )

        if goroutine_id is None:
            group.count += sample.values[0] if sample.values else 1
            continue
        goroutine = Goroutine(
            id=str(goroutine_id),
            state=state,
            wait_minutes=wait,
            creator=str(creator_id) if creator_id else "",
        )
        group.goroutines.append(goroutine)
        group.count += 1
        goroutines.append(goroutine)

    existing = {g.id for g in goroutines}
    created: dict[str, list[str]] = {}
    for goroutine in goroutines:
        goroutine.creator_exists = goroutine.creator in existing
        if goroutine.creator:
            created.setdefault(goroutine.creator, []).append(goroutine.id)
    for goroutine in goroutines:
        goroutine.created = created.get(goroutine.id, [])

    result = ParsedFile(
        original_name=file_name,
        groups=list(groups.values()),
        extracted_name=extractor.name,
    )
    result.total_goroutines = result.goroutine_count
    logger.debug(
        "%s: decoded %d samples into %d groups", file_name, len(profile.samples), len(groups)
    )
    return result
