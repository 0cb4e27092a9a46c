"""Summarize goroutine dumps from the command line.

    python -m stack_nuggets.cli stacks.txt other.pb.gz --filter "wait:10+ pgwire" --show stacks
"""

import logging
import math
from typing import Literal

from jsonargparse import CLI
from rich.console import Console
from rich.markup import escape
from tabulate import tabulate

from stack_nuggets import init_logging
from stack_nuggets.collection import ProfileCollection
from stack_nuggets.loader import load_paths
from stack_nuggets.settings import Settings


def _wait_range(counts) -> str:
    if math.isinf(counts.min_matching_wait):
        return ""
    if counts.min_matching_wait == counts.max_matching_wait:
        return f"{counts.min_matching_wait:g}m"
    return f"{counts.min_matching_wait:g}-{counts.max_matching_wait:g}m"


def category_rows(collection: ProfileCollection) -> list[dict]:
    rows = []
    for category in sorted(collection.categories, key=lambda c: -c.counts.matches):
        if not category.counts.matches:
            continue
        rows.append(
            {
                "category": category.name,
                "stacks": sum(1 for s in category.stacks if s.counts.matches),
                "goroutines": category.counts.matches,
                "total": category.counts.total,
                "wait": _wait_range(category.counts),
            }
        )
    return rows


def stack_rows(collection: ProfileCollection, limit: int) -> list[dict]:
    stacks = [s for s in collection.iter_stacks() if s.counts.matches]
    stacks.sort(key=lambda s: -s.counts.matches)
    return [
        {
            "stack": s.name,
            "category": s.category.name,
            "goroutines": s.counts.matches,
            "files": len(s.files),
            "wait": _wait_range(s.counts),
        }
        for s in stacks[:limit]
    ]


def state_rows(collection: ProfileCollection) -> list[dict]:
    return [
        {"state": state, "visible": stats["visible"], "total": stats["total"]}
        for state, stats in collection.get_state_statistics().items()
    ]


def file_rows(collection: ProfileCollection) -> list[dict]:
    return [
        {"file": name, "visible": stats["visible"], "total": stats["total"]}
        for name, stats in collection.get_file_statistics().items()
    ]


def main(
    paths: list[str],
    filter: str = "",
    show: Literal["categories", "stacks", "states", "files"] = "categories",
    settings: str | None = None,
    limit: int = 50,
    verbose: bool = False,
) -> int:
    """Load goroutine dumps and print a grouped summary.

    Args:
        paths: Text dumps, binary goroutine profiles or zip archives.
        filter: Filter query, e.g. "state:select wait:5+ pgwire".
        show: Which table to print.
        settings: Path to a JSON settings export.
        limit: Maximum rows for the stacks table.
        verbose: Log at DEBUG level.
    """
    init_logging(logging.DEBUG if verbose else logging.WARNING)
    console = Console()

    config = Settings.load(settings) if settings else Settings()
    collection = ProfileCollection(config)
    statuses = load_paths(collection, paths, config)
    for status in statuses:
        if not status.ok:
            console.print(f"[red]✗[/red] {escape(status.name)}: {escape(status.error)}")
    if not any(s.ok for s in statuses):
        console.print("[yellow]Nothing loaded[/yellow]")
        return 1

    if filter:
        error = collection.set_filter(filter)
        if error:
            console.print(f"[red]Invalid filter:[/red] {escape(error)}")
            return 2

    stats = collection.get_stack_statistics()
    console.print(
        f"[bold]{stats['visible_goroutines']}/{stats['total_goroutines']}[/bold] goroutines in "
        f"[bold]{stats['visible']}/{stats['total']}[/bold] stacks "
        f"from {len(collection.get_file_names())} file(s)"
    )

    match show:
        case "categories":
            rows = category_rows(collection)
        case "stacks":
            rows = stack_rows(collection, limit)
        case "states":
            rows = state_rows(collection)
        case "files":
            rows = file_rows(collection)
    print(tabulate(rows, headers="keys", tablefmt="github"))
    return 0


def run():
    return CLI(main)


if __name__ == "__main__":
    raise SystemExit(run())
