"""Name extraction: derive a short display name (e.g. a node id) from dump content."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from stack_nuggets.patterns import compile_pattern


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

HEX_PREFIX = "hex:"


@dataclass(frozen=True)
class NameExtractionPattern:
    """A regex and a replacement template such as ``"n$1"``.

    A template starting with ``hex:`` converts the first capture group from
    hexadecimal to decimal before substituting it.
    """

    regex: str
    replacement: str
    description: str = ""

    def apply(self, line: str) -> str | None:
        regex = compile_pattern(self.regex)
        if regex is None:
            return None
        match = regex.search(line)
        if match is None:
            return None

        result = self.replacement
        if result.startswith(HEX_PREFIX):
            result = result[len(HEX_PREFIX) :]
            try:
                value = str(int(match.group(1), 16))
            except (IndexError, TypeError, ValueError):
                return None
            return result.replace("$1", value, 1)

        groups = [match.group(0), *match.groups()]
        # Highest index first so "$1" does not eat the prefix of "$10".
        for i in range(len(groups) - 1, -1, -1):
            result = result.replace(f"${i}", groups[i] or "")
        return result


DEFAULT_NAME_EXTRACTION_PATTERNS = (
    NameExtractionPattern(
        regex=r"pgwire\.\(\*Server\)\.serveImpl.*?\{0x1,\s*0x2,\s*\{0x([0-9a-fA-F]+),",
        replacement="hex:n$1",
        description="CockroachDB node id from pgwire serveImpl arguments",
    ),
    NameExtractionPattern(
        regex=r"pgwire\.\(\*Server\)\.serveImpl.*?\{0x0,\s*0x4,\s*\{0x([0-9a-fA-F]+),",
        replacement="hex:n$1",
        description="CockroachDB node id from pgwire serveImpl arguments (alternate layout)",
    ),
    NameExtractionPattern(
        regex=r'# labels:.*?"n":"([0-9]+)"',
        replacement="n$1",
        description="CockroachDB node id from pprof labels",
    ),
)


class NameExtractor:
    """Remembers the first name any configured pattern yields."""

    def __init__(self, patterns: Sequence[NameExtractionPattern] = ()):
        self.patterns = tuple(patterns)
        self.name: str | None = None

    def feed(self, line: str) -> None:
        if self.name is not None or not self.patterns:
            return
        for pattern in self.patterns:
            result = pattern.apply(line)
            if result:
                logger.debug("Extracted name %r using %r", result, pattern.regex)
                self.name = result
                return
