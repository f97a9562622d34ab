#!/usr/bin/env python3
"""
Compaction Tests

Tests folding of not_found crawl attempts into not-found ranges.
"""

import os
import shutil
import tempfile

from compactor import compact_not_found
from models import STATUS_ERROR, STATUS_NOT_FOUND
from storage import SQLRepository


class TestCompaction:
    """Test not_found compaction into ranges"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = SQLRepository(f"sqlite:///{os.path.join(self.temp_dir, 'test.db')}")

    def teardown_method(self):
        self.repository.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _not_found(self, year, *indices):
        for index in indices:
            url = f"https://sgg.gouv.bj/doc/decret-{year}-{index}/download"
            self.repository.mark_attempt_pending(url, year, index)
            self.repository.update_attempt(url, STATUS_NOT_FOUND, http_status=404)

    def _ranges(self, year):
        return [(r.start_index, r.end_index, r.count) for r in self.repository.list_ranges(year)]

    def test_creates_range_and_deletes_rows(self):
        self._not_found(2024, 10, 11, 12)

        result = compact_not_found(self.repository, [2024])

        assert result.ranges_created == 1
        assert result.rows_deleted == 3
        assert self._ranges(2024) == [(10, 12, 3)]
        assert self.repository.list_not_found_attempts(2024, 100) == []

    def test_adjacent_run_extends_range(self):
        self._not_found(2024, 10, 11, 12)
        compact_not_found(self.repository, [2024])

        self._not_found(2024, 13, 14, 15)
        result = compact_not_found(self.repository, [2024])

        assert result.ranges_extended == 1
        assert result.ranges_created == 0
        assert self._ranges(2024) == [(10, 15, 6)]

    def test_run_extends_range_backwards(self):
        self.repository.create_range(2024, 5, 9)
        self._not_found(2024, 3, 4)

        compact_not_found(self.repository, [2024])

        assert self._ranges(2024) == [(3, 9, 7)]

    def test_run_bridging_two_ranges_merges_them(self):
        self.repository.create_range(2024, 1, 3)
        self.repository.create_range(2024, 7, 9)
        self._not_found(2024, 4, 5, 6)

        compact_not_found(self.repository, [2024])

        assert self._ranges(2024) == [(1, 9, 9)]

    def test_separate_runs_and_overlap(self):
        self.repository.create_range(2024, 1, 5)
        self._not_found(2024, 4, 5, 6, 20, 21)

        result = compact_not_found(self.repository, [2024])

        assert self._ranges(2024) == [(1, 6, 6), (20, 21, 2)]
        assert result.ranges_extended == 1
        assert result.ranges_created == 1

    def test_years_are_independent_and_other_statuses_untouched(self):
        self._not_found(2024, 1, 2)
        self._not_found(2023, 3)
        url = "https://sgg.gouv.bj/doc/decret-2024-3/download"
        self.repository.mark_attempt_pending(url, 2024, 3)
        self.repository.update_attempt(url, STATUS_ERROR, last_error="timeout")

        compact_not_found(self.repository, [2024])

        assert self._ranges(2024) == [(1, 2, 2)]
        assert self._ranges(2023) == []
        assert len(self.repository.list_not_found_attempts(2023, 10)) == 1
        assert self.repository.find_attempt(url).status == STATUS_ERROR

    def test_row_cap_per_call(self):
        self._not_found(2024, *range(1, 11))

        first = compact_not_found(self.repository, [2024], max_rows_per_year=4)
        assert first.rows_deleted == 4
        assert self._ranges(2024) == [(1, 4, 4)]

        compact_not_found(self.repository, [2024], max_rows_per_year=100)
        assert self._ranges(2024) == [(1, 10, 10)]

    def test_nothing_to_compact(self):
        result = compact_not_found(self.repository, [2024])
        assert (result.ranges_created, result.ranges_extended, result.rows_deleted) == (0, 0, 0)
