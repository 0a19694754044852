"""
Download-mode resolver.

Maps a job's settings (mode, 1-based skip/redownload lists, 1-based
inclusive range with -1 for an open bound) and the number of discovered
children to the sorted 0-based indices that should actually be
processed. Pure: no I/O, same inputs give the same output.
"""

from collections.abc import Collection, Iterable
from typing import Protocol

from comicrawl.database.models import DownloadMode
from comicrawl.models.schemas import DuplicateCheckResult


class SelectionSettings(Protocol):
    skip_items: list[int]
    redownload_items: list[int]
    range_start: int
    range_end: int


def to_zero_based(items: Iterable[int], total: int) -> set[int]:
    """Convert 1-based configured positions to in-bounds 0-based indices."""
    return {item - 1 for item in items if 1 <= item <= total}


def index_window(total: int, range_start: int = -1, range_end: int = -1) -> range:
    """0-based indices covered by the inclusive 1-based range."""
    start = range_start - 1 if range_start > 0 else 0
    end = min(range_end, total) if range_end > 0 else total
    return range(max(start, 0), max(end, 0))


def resolve_indices(
    total: int,
    mode: DownloadMode,
    settings: SelectionSettings,
    *,
    previous_total: int = 0,
    present: Collection[int] = (),
) -> list[int]:
    """
    Select which of ``total`` discovered children to process.

    Args:
        total: Number of discovered children
        mode: Download mode of the job
        settings: Range/skip/redownload configuration (1-based)
        previous_total: Child count recorded by an earlier crawl (UPDATE only)
        present: 0-based indices already catalogued (UPDATE only)

    Returns:
        Sorted 0-based indices

    Modes:
        FULL     every index in range, minus skip
        UPDATE   indices beyond ``previous_total`` not yet present,
                 plus redownload; bounded by range, minus skip
        PARTIAL  range plus redownload, minus skip
        NONE     nothing
    """
    if total <= 0 or mode is DownloadMode.NONE:
        return []

    window = index_window(total, settings.range_start, settings.range_end)
    skip = to_zero_based(settings.skip_items, total)
    redownload = to_zero_based(settings.redownload_items, total)

    if mode is DownloadMode.FULL:
        selected = set(window)
    elif mode is DownloadMode.UPDATE:
        present = set(present)
        new_items = {i for i in window if i >= previous_total and i not in present}
        selected = new_items | (redownload & set(window))
    else:
        selected = set(window) | redownload

    return sorted(selected - skip)


def suggest_mode(result: DuplicateCheckResult) -> DownloadMode:
    """
    Mode to use for a new crawl given its duplicate check.

    A duplicate that already has catalogued children only needs new ones.
    """
    if result.has_duplicate and result.existing_child_count > 0:
        return DownloadMode.UPDATE
    return DownloadMode.FULL
