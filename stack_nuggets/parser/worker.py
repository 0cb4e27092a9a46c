"""Off-thread decoding.

Decoding large dumps is the only slow step; ``BackgroundParser`` runs it on a
thread pool so a caller (UI loop, server handler) can keep responding and
merge the result into a ``ProfileCollection`` on its own thread afterwards.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from stack_nuggets.parser.types import ParseResult
from stack_nuggets.settings import Settings


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class ParseStats:
    goroutines: int = 0
    groups: int = 0
    elapsed_ms: float = 0.0


@dataclass
class ParseOutcome:
    result: ParseResult
    stats: ParseStats


def parse_with_stats(data: str | bytes, file_name: str, settings: Settings) -> ParseOutcome:
    parser = settings.make_parser()
    t0 = time.perf_counter()
    if isinstance(data, str):
        result = parser.parse_string(data, file_name)
    else:
        result = parser.parse_bytes(data, file_name)
    stats = ParseStats(elapsed_ms=(time.perf_counter() - t0) * 1000)
    if result.ok:
        stats.goroutines = result.file.goroutine_count
        stats.groups = len(result.file.groups)
    logger.debug(
        "%s: %d goroutines, %d groups in %.1f ms",
        file_name,
        stats.goroutines,
        stats.groups,
        stats.elapsed_ms,
    )
    return ParseOutcome(result, stats)


class BackgroundParser:
    """Decodes inputs on worker threads.

    Example:
        >>> with BackgroundParser() as bg:
        ...     outcome = bg.submit(text, "stacks.txt").result()
        >>> collection.add_file(outcome.result.file)
    """

    def __init__(self, max_workers: int = 1, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="stack-nuggets-parse"
        )

    def submit(
        self, data: str | bytes, file_name: str, settings: Settings | None = None
    ) -> Future[ParseOutcome]:
        return self._executor.submit(parse_with_stats, data, file_name, settings or self.settings)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> BackgroundParser:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
