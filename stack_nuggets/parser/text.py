"""Decoders for the two text goroutine dump formats.

Legacy aggregated format (``debug=1``)::

    goroutine profile: total 3
    2 @ 0x1000 0x2000
    # labels: {"n":"1"}
    #	0x1000	main.worker+0x10	/main.go:10

Raw per-goroutine format (``debug=2`` / panic output)::

    goroutine 7 [select, 5 minutes, "n":"1"]:
    main.worker(0xc000010000)
    	/main.go:10 +0x10
    created by main.start in goroutine 1
    	/main.go:3 +0x20
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence

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

RAW_FORMAT_RE = re.compile(r"^goroutine \d+ \[")

_TOTAL_RE = re.compile(r"goroutine profile: total (\d+)")
_COUNT_RE = re.compile(r"^(\d+) (?:@|goroutines? in stack:)")
_LABELS_RE = re.compile(r"^# labels:?\s*(\{.*\})")
_LEGACY_FRAME_RE = re.compile(r"^#\s*0x[0-9a-fA-F]+\s+(\S+)\s+(.+?):(\d+)")
_OFFSET_RE = re.compile(r"\+0x[0-9a-fA-F]+$")

_HEADER_RE = re.compile(r"^goroutine (\d+) \[(.*)\]:?\s*$")
_FUNCTION_RE = re.compile(r"^(.+)(\(.*\))$")
_LOCATION_RE = re.compile(r"^(.+):(\d+)(?:\s.*)?$")
_CREATED_BY_RE = re.compile(r"^created by (.+?)(?: in goroutine (\d+))?$")
_WAIT_RE = re.compile(r"^(\d+(?:\.\d+)?) minutes?$")
_LABEL_TOKEN_RE = re.compile(r'^"(?:[^"\\]|\\.)*"\s*:\s*"(?:[^"\\]|\\.)*"$')

STATE_NORMALIZATION = {
    "sync.Mutex.Lock": "semacquire",
    "sync.RWMutex.Lock": "semacquire",
    "sync.RWMutex.RLock": "semacquire",
    "sync.WaitGroup.Wait": "wait",
    "sync.Cond.Wait": "wait",
}


def normalize_state(state: str) -> str:
    return STATE_NORMALIZATION.get(state, state)


def is_raw_format(text: str) -> bool:
    return RAW_FORMAT_RE.match(text.strip()) is not None


def _is_indented(line: str) -> bool:
    return line.startswith("\t") or line.startswith("    ")


def _strip_args(line: str) -> str:
    match = _FUNCTION_RE.match(line)
    return match.group(1) if match else line


def _label_value(value) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def split_state_spec(spec: str) -> list[str]:
    """Split the bracketed header on commas that are not inside quotes."""
    tokens = []
    current = []
    in_quotes = False
    escaped = False
    for c in spec:
        if escaped:
            current.append(c)
            escaped = False
        elif c == "\\" and in_quotes:
            current.append(c)
            escaped = True
        elif c == '"':
            current.append(c)
            in_quotes = not in_quotes
        elif c == "," and not in_quotes:
            tokens.append("".join(current).strip())
            current = []
        else:
            current.append(c)
    tokens.append("".join(current).strip())
    return [t for t in tokens if t]


def parse_state_spec(spec: str) -> tuple[str, float, tuple[str, ...]]:
    """Returns (state, wait_minutes, labels) for a ``[state, N minutes, ...]`` header."""
    tokens = split_state_spec(spec)
    if not tokens:
        return "unknown", 0, ()

    state = normalize_state(tokens[0])
    wait = 0.0
    labels = []
    for token in tokens[1:]:
        if m := _WAIT_RE.match(token):
            wait = float(m.group(1))
        elif _LABEL_TOKEN_RE.match(token):
            try:
                (key, value), = json.loads("{" + token + "}").items()
                labels.append(f"{key}={_label_value(value)}")
            except ValueError:
                labels.append(token)
        else:
            labels.append(token)
    return state, wait, tuple(labels)


def _parse_location(line: str) -> tuple[str, int] | None:
    match = _LOCATION_RE.match(line.strip())
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def parse_raw(
    text: str,
    file_name: str,
    name_patterns: Sequence[NameExtractionPattern] = (),
) -> ParsedFile:
    """Decode a raw per-goroutine dump.

    Lines that fit neither a header nor a frame are skipped, so a truncated or
    partially garbled dump still yields every goroutine that could be read.
    """
    lines = text.splitlines()
    extractor = NameExtractor(name_patterns)
    parsed: list[tuple[Goroutine, tuple[Frame, ...], tuple[str, ...]]] = []

    i = 0
    while i < len(lines):
        stripped = lines[i].strip()
        extractor.feed(stripped)
        header = _HEADER_RE.match(stripped)
        i += 1
        if header is None:
            continue

        state, wait, labels = parse_state_spec(header.group(2))
        goroutine = Goroutine(id=header.group(1), state=state, wait_minutes=wait)
        trace: list[Frame] = []

        while i < len(lines):
            line = lines[i].rstrip("\r")
            stripped = line.strip()
            if not stripped or _HEADER_RE.match(stripped):
                break
            extractor.feed(stripped)
            i += 1

            if stripped.startswith("created by "):
                creator_match = _CREATED_BY_RE.match(stripped)
                func = _strip_args(creator_match.group(1))
                goroutine.creator = creator_match.group(2) or ""
                location = None
                if i < len(lines) and _is_indented(lines[i]):
                    location = _parse_location(lines[i])
                    i += 1
                file, line_no = location or ("unknown", 0)
                goroutine.created_by = Frame(func, file, line_no)
                continue

            if _is_indented(line):
                # A location line without a preceding function line.
                continue

            func = _strip_args(stripped)
            if i < len(lines) and _is_indented(lines[i]):
                location = _parse_location(lines[i])
                i += 1
                if location is not None:
                    trace.append(Frame(func, *location))

        parsed.append((goroutine, tuple(trace), labels))

    existing = {g.id for g, _, _ in parsed}
    created: dict[str, list[str]] = {}
    for goroutine, _, _ in parsed:
        if goroutine.creator:
            created.setdefault(goroutine.creator, []).append(goroutine.id)

    groups: dict[tuple, Group] = {}
    for goroutine, trace, labels in parsed:
        goroutine.creator_exists = goroutine.creator in existing
        goroutine.created = created.get(goroutine.id, [])
        trace_id = fingerprint(trace)
        key = (trace_id, goroutine.state, tuple(sorted(labels)))
        group = groups.get(key)
        if group is None:
            group = groups[key] = Group(
                trace=trace,
                count=0,
                state=goroutine.state,
                labels=key[2],
                trace_id=trace_id,
            )
        group.goroutines.append(goroutine)
        group.count += 1

    logger.debug("%s: parsed %d goroutines into %d groups", file_name, len(parsed), len(groups))
    return ParsedFile(
        original_name=file_name,
        groups=list(groups.values()),
        extracted_name=extractor.name,
        total_goroutines=len(parsed),
    )


def parse_legacy(
    text: str,
    file_name: str,
    name_patterns: Sequence[NameExtractionPattern] = (),
) -> ParsedFile:
    """Decode a legacy aggregated dump.

    Raises:
        DecodeError: if a labels line carries malformed JSON.
    """
    lines = text.splitlines()
    extractor = NameExtractor(name_patterns)
    groups: list[Group] = []

    total = None
    if lines and (m := _TOTAL_RE.search(lines[0])):
        total = int(m.group(1))

    i = 0
    while i < len(lines):
        line = lines[i].strip()
        extractor.feed(line)
        i += 1
        count_match = _COUNT_RE.match(line)
        if count_match is None:
            continue
        count = int(count_match.group(1))

        labels: dict[str, str] = {}
        while i < len(lines) and lines[i].strip().startswith("# labels"):
            label_line = lines[i].strip()
            extractor.feed(label_line)
            i += 1
            match = _LABELS_RE.match(label_line)
            if match is None:
                continue
            try:
                decoded = json.loads(match.group(1))
            except ValueError as e:
                raise DecodeError(f"Failed to parse labels: {match.group(1)}") from e
            if not isinstance(decoded, dict):
                raise DecodeError(f"Failed to parse labels: {match.group(1)}")
            labels.update({k: _label_value(v) for k, v in decoded.items()})

        trace = []
        while i < len(lines):
            frame_line = lines[i].strip()
            if not frame_line.startswith("#") or frame_line == "#":
                break
            extractor.feed(frame_line)
            i += 1
            if m := _LEGACY_FRAME_RE.match(frame_line):
                func = _OFFSET_RE.sub("", m.group(1))
                trace.append(Frame(func, m.group(2), int(m.group(3))))

        state = normalize_state(labels.pop("state", "unknown"))
        trace = tuple(trace)
        groups.append(
            Group(
                trace=trace,
                count=count,
                state=state,
                labels=tuple(sorted(f"{k}={v}" for k, v in labels.items())),
                trace_id=fingerprint(trace),
            )
        )

    logger.debug("%s: parsed %d legacy groups", file_name, len(groups))
    return ParsedFile(
        original_name=file_name,
        groups=groups,
        extracted_name=extractor.name,
        total_goroutines=total,
    )


def parse_text(
    text: str,
    file_name: str,
    name_patterns: Sequence[NameExtractionPattern] = (),
) -> ParsedFile:
    if is_raw_format(text):
        return parse_raw(text, file_name, name_patterns)
    return parse_legacy(text, file_name, name_patterns)
