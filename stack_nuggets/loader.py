"""Load several dumps into a collection in one go.

Each input is decoded and merged on its own; a bad file is reported in its
``LoadStatus`` and the rest of the batch still loads.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from stack_nuggets.collection import FileSection, ProfileCollection
from stack_nuggets.settings import Settings


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class LoadStatus:
    """Outcome for one decoded input (one per archive entry for zips)."""

    name: str
    ok: bool
    error: str | None = None
    sections: list[FileSection] = field(default_factory=list)


def load_blobs(
    collection: ProfileCollection,
    items: Iterable[tuple[str, bytes]],
    settings: Settings | None = None,
) -> list[LoadStatus]:
    """Decode and merge ``(name, data)`` pairs in order."""
    settings = settings or collection.settings
    parser = settings.make_parser()
    zip_regex = settings.zip_regex()
    statuses = []
    for name, data in items:
        for result in parser.parse_any(data, name, zip_regex):
            if not result.ok:
                logger.warning("Failed to load %s: %s", result.file_name or name, result.error)
                statuses.append(LoadStatus(result.file_name or name, False, result.error))
                continue
            sections = collection.add_file(result.file)
            statuses.append(LoadStatus(result.file.name, True, sections=sections))
    return statuses


def load_paths(
    collection: ProfileCollection,
    paths: Iterable[str | Path],
    settings: Settings | None = None,
) -> list[LoadStatus]:
    statuses = []
    blobs = []
    for path in map(Path, paths):
        try:
            blobs.append((path.name, path.read_bytes()))
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            statuses.append(LoadStatus(path.name, False, str(e)))
    statuses.extend(load_blobs(collection, blobs, settings))
    return statuses
