"""
Not-Found Range Compaction

Folds confirmed not_found crawl attempts into per-year NotFoundRange
intervals and deletes the folded rows, keeping the scanner's skip list short
no matter how much history accumulates.
"""

import logging
from typing import List, Sequence, Tuple

from models import CompactionResult, CrawlAttempt
from storage import Repository


def group_consecutive(attempts: Sequence[CrawlAttempt]) -> List[Tuple[int, int, List[int]]]:
    """
    Group attempts into maximal runs of consecutive indices.

    Returns:
        List of (start_index, end_index, attempt_ids), ordered by start_index
    """
    items = sorted((a for a in attempts if a.index is not None), key=lambda a: a.index)
    runs: List[Tuple[int, int, List[int]]] = []

    for attempt in items:
        if runs and attempt.index <= runs[-1][1] + 1:
            start, end, ids = runs[-1]
            runs[-1] = (start, max(end, attempt.index), ids + [attempt.id])
        else:
            runs.append((attempt.index, attempt.index, [attempt.id]))
    return runs


def compact_not_found(repository: Repository, years: Sequence[int], max_rows_per_year: int = 500) -> CompactionResult:
    """
    Compact not_found attempts into NotFoundRange rows.

    Each run of consecutive indices is merged with every range it overlaps or
    touches (ending at start - 1 or starting at end + 1); if there is none a
    new range is created. The run's attempt rows are then deleted.

    Args:
        repository: Storage gateway
        years: Years to compact
        max_rows_per_year: Upper bound of attempt rows read per year and call

    Returns:
        CompactionResult with created/extended range and deleted row counts
    """
    result = CompactionResult()

    for year in years:
        attempts = repository.list_not_found_attempts(year, max_rows_per_year)
        if not attempts:
            continue

        for start, end, ids in group_consecutive(attempts):
            touching = repository.find_ranges_touching(year, start, end)
            if touching:
                keep = touching[0]
                new_start = min([start] + [r.start_index for r in touching])
                new_end = max([end] + [r.end_index for r in touching])
                for redundant in touching[1:]:
                    repository.delete_range(redundant.id)
                repository.update_range(keep.id, new_start, new_end)
                result.ranges_extended += 1
                logging.debug(f"[{year}] extended not_found range #{keep.id} to [{new_start}-{new_end}]")
            else:
                repository.create_range(year, start, end)
                result.ranges_created += 1
                logging.debug(f"[{year}] new not_found range [{start}-{end}]")

            result.rows_deleted += repository.delete_attempts(ids)

    if result.ranges_created or result.ranges_extended:
        logging.info(f"Compaction for {list(years)}: {result.ranges_created} ranges created, "
                     f"{result.ranges_extended} extended, {result.rows_deleted} rows deleted")
    return result
