"""Goroutine dump decoders.

``FileParser`` is the single entry point: it sniffs the input format and
never raises for bad input, returning a failed ``ParseResult`` instead.
"""

from __future__ import annotations

import gzip
import logging
import re
import zlib
from collections.abc import Sequence

from stack_nuggets.parser.names import (
    DEFAULT_NAME_EXTRACTION_PATTERNS,
    NameExtractionPattern,
    NameExtractor,
)
from stack_nuggets.parser.pprof import GZIP_MAGIC, parse_profile
from stack_nuggets.parser.text import parse_legacy, parse_raw, parse_text
from stack_nuggets.parser.types import (
    DecodeError,
    Frame,
    Goroutine,
    Group,
    ParsedFile,
    ParseResult,
    fingerprint,
)
from stack_nuggets.parser.zip import DEFAULT_ZIP_PATTERN, extract_entries, is_zip


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_NAME_EXTRACTION_PATTERNS",
    "DEFAULT_ZIP_PATTERN",
    "DecodeError",
    "FileParser",
    "Frame",
    "Goroutine",
    "Group",
    "NameExtractionPattern",
    "NameExtractor",
    "ParsedFile",
    "ParseResult",
    "fingerprint",
    "parse_legacy",
    "parse_profile",
    "parse_raw",
]

_TEXT_START_RE = re.compile(r"^(goroutine |\d+ @|\d+ goroutines? in stack:)")


def _as_text(data: bytes) -> str | None:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _looks_like_text_dump(text: str | None) -> bool:
    return text is not None and _TEXT_START_RE.match(text.lstrip()) is not None


class FileParser:
    """Decodes text dumps, binary profiles and zip archives into ParsedFiles."""

    def __init__(self, name_extraction_patterns: Sequence[NameExtractionPattern] = ()):
        self.name_extraction_patterns = tuple(name_extraction_patterns)

    def parse_string(self, text: str, file_name: str) -> ParseResult:
        try:
            parsed = parse_text(text, file_name, self.name_extraction_patterns)
        except DecodeError as e:
            logger.debug("%s: %s", file_name, e)
            return ParseResult.failure(file_name, str(e))
        return ParseResult.success(parsed)

    def parse_bytes(self, data: bytes, file_name: str) -> ParseResult:
        """Decode a single (non-archive) input of unknown format."""
        if data[:2] == GZIP_MAGIC:
            try:
                inner = gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as e:
                return ParseResult.failure(file_name, f"invalid gzip data: {e}")
            text = _as_text(inner)
            if _looks_like_text_dump(text):
                return self.parse_string(text, file_name)
            return self._parse_profile(inner, file_name)

        text = _as_text(data)
        if text is not None and (_looks_like_text_dump(text) or not text.strip()):
            return self.parse_string(text, file_name)

        result = self._parse_profile(data, file_name)
        if not result.ok and text is not None:
            return self.parse_string(text, file_name)
        return result

    def _parse_profile(self, data: bytes, file_name: str) -> ParseResult:
        try:
            parsed = parse_profile(data, file_name, self.name_extraction_patterns)
        except DecodeError as e:
            logger.debug("%s: not a goroutine profile: %s", file_name, e)
            return ParseResult.failure(file_name, f"Failed to decode profile: {e}")
        return ParseResult.success(parsed)

    def parse_zip(
        self, data: bytes, file_name: str, pattern: str | re.Pattern = DEFAULT_ZIP_PATTERN
    ) -> list[ParseResult]:
        """Decode every archive entry matching ``pattern``; one result per entry."""
        try:
            entries = extract_entries(data, pattern)
        except DecodeError as e:
            return [ParseResult.failure(file_name, str(e))]
        return [
            ParseResult.failure(entry.path, entry.error)
            if entry.error
            else self.parse_bytes(entry.content, entry.path)
            for entry in entries
        ]

    def parse_any(
        self, data: bytes, file_name: str, zip_pattern: str | re.Pattern = DEFAULT_ZIP_PATTERN
    ) -> list[ParseResult]:
        if is_zip(data, file_name):
            return self.parse_zip(data, file_name, zip_pattern)
        return [self.parse_bytes(data, file_name)]
