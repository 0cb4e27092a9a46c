"""Decoded representation shared by every goroutine dump decoder.

All decoders produce a ParsedFile: a flat list of Groups, each holding a
trace (innermost call first, the order goroutine dumps print frames in), the
goroutines that share it, and the labels attached to them. The collection
merges these into its Category/Stack/FileSection/Group hierarchy.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field


__all__ = [
    "DecodeError",
    "Frame",
    "Goroutine",
    "Group",
    "ParsedFile",
    "ParseResult",
    "fingerprint",
]


class DecodeError(ValueError):
    """Raised when an input cannot be decoded at all."""


@dataclass(frozen=True)
class Frame:
    """A single call frame.

    Attributes:
        func: Fully qualified function name without arguments.
        file: Source file path.
        line: Source line number.
    """

    func: str
    file: str
    line: int

    def __str__(self) -> str:
        return f"{self.func} {self.file}:{self.line}"


@dataclass
class Goroutine:
    """One goroutine as it appeared in a dump.

    Attributes:
        id: Goroutine id as printed in the dump (never namespaced here).
        state: Normalised wait state, e.g. "running" or "chan receive".
        wait_minutes: How long the goroutine has been blocked.
        creator: Id of the goroutine that started this one, "" if unknown.
        creator_exists: Whether the creator is present in the same dump.
        created: Ids of goroutines this one created.
        created_by: The "created by" frame, when the dump carries one.
    """

    id: str
    state: str
    wait_minutes: float = 0
    creator: str = ""
    creator_exists: bool = False
    created: list[str] = field(default_factory=list)
    created_by: Frame | None = None


@dataclass
class Group:
    """Goroutines from one dump sharing a trace, a state and labels.

    Legacy aggregated dumps only carry a count, in which case ``goroutines``
    is empty and ``count`` holds the number of goroutines.
    """

    trace: tuple[Frame, ...]
    count: int
    state: str = "unknown"
    labels: tuple[str, ...] = ()
    goroutines: list[Goroutine] = field(default_factory=list)
    trace_id: str = ""


@dataclass
class ParsedFile:
    original_name: str
    groups: list[Group] = field(default_factory=list)
    extracted_name: str | None = None
    total_goroutines: int | None = None

    @property
    def name(self) -> str:
        return self.extracted_name or self.original_name

    @property
    def goroutine_count(self) -> int:
        return sum(g.count for g in self.groups)


@dataclass
class ParseResult:
    """Outcome of decoding one input; exactly one of ``file``/``error`` is set."""

    file: ParsedFile | None = None
    error: str | None = None
    file_name: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, parsed: ParsedFile) -> ParseResult:
        return cls(file=parsed, file_name=parsed.original_name)

    @classmethod
    def failure(cls, file_name: str, reason: str) -> ParseResult:
        return cls(error=reason, file_name=file_name)


FINGERPRINT_LENGTH = 24


def fingerprint(trace: tuple[Frame, ...] | list[Frame]) -> str:
    """Stable id for a trace: the tail of a SHA-256 over ``func file:line`` lines."""
    text = "\n".join(str(frame) for frame in trace)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[-FINGERPRINT_LENGTH:]
