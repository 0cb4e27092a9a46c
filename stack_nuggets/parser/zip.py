"""Pull goroutine dumps out of zip archives such as debug bundles."""

from __future__ import annotations

import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass

from stack_nuggets.parser.types import DecodeError
from stack_nuggets.patterns import compile_pattern


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_ZIP_PATTERN = r"^(.*/)?stacks\.txt$"
ZIP_MAGIC = b"PK\x03\x04"


@dataclass(frozen=True)
class ZipEntry:
    """One selected archive member.

    Attributes:
        path: Member path inside the archive.
        content: Uncompressed bytes; empty when ``error`` is set.
        error: Why the member could not be read, if it could not.
    """

    path: str
    content: bytes = b""
    error: str | None = None


def is_zip(data: bytes, file_name: str = "") -> bool:
    return data[:4] == ZIP_MAGIC or file_name.lower().endswith(".zip")


def extract_entries(
    data: bytes, pattern: str | re.Pattern = DEFAULT_ZIP_PATTERN
) -> list[ZipEntry]:
    """Return every file entry whose path matches ``pattern``, in archive order.

    A member that fails to decompress is returned with ``error`` set so the
    other members can still be used.

    Raises:
        DecodeError: if ``data`` is not a readable zip or ``pattern`` is invalid.
    """
    regex = pattern if isinstance(pattern, re.Pattern) else compile_pattern(pattern)
    if regex is None:
        raise DecodeError(f"Invalid zip entry pattern: {pattern}")

    entries = []
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                if info.is_dir() or not regex.search(info.filename):
                    continue
                try:
                    content = archive.read(info)
                except (
                    zipfile.BadZipFile,
                    zlib.error,
                    RuntimeError,
                    NotImplementedError,
                    EOFError,
                ) as e:
                    logger.debug("Skipping unreadable entry %s: %s", info.filename, e)
                    entries.append(ZipEntry(info.filename, error=f"ZIP: {e}"))
                    continue
                entries.append(ZipEntry(info.filename, content))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise DecodeError(f"ZIP: {e}") from e

    logger.debug("Extracted %d entries matching %s", len(entries), regex.pattern)
    return entries
