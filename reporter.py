"""
Progress Reporting and Statistics Module

This module handles real-time progress reporting of scans, the final scan
summary (printed or saved as JSON/CSV) and the rendering of job run history.
"""

import os
import time
import json
import csv
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from tqdm import tqdm

from models import RunLog, RunLogAggregate, ScanStats
from utils import format_duration, format_file_size, get_file_timestamp


class ProgressReporter:
    """Handles progress tracking and report generation"""

    def __init__(self, show_progress: bool = True):
        self.show_progress = show_progress
        self.stats: Dict[str, int] = defaultdict(int)
        self.start_time = time.time()
        self.year_stats: Dict[int, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.current_progress_bars: Dict[int, tqdm] = {}

    def start_year(self, year: int):
        """Open the progress bar of a year"""
        self.close_progress_bar(year)
        self.current_progress_bars[year] = tqdm(
            desc=f"{year}",
            unit="idx",
            leave=True,
            disable=not self.show_progress,
        )

    def track_known_skip(self, year: int, count: int):
        """Indices jumped over because they fall in a known not_found range"""
        self.year_stats[year]["skipped_known"] += count
        self.stats["total_skipped_known"] += count
        self._advance(year, count)

    def track_outcome(self, year: int, outcome: str, byte_size: int = 0):
        """Track the folded outcome of one index"""
        self.year_stats[year][outcome] += 1
        self.stats[f"total_{outcome}"] += 1
        if outcome == "downloaded" and byte_size:
            self.year_stats[year]["total_size"] += byte_size
            self.stats["total_size"] += byte_size
        self._advance(year, 1)

    def finish_year(self, year: int, stats: ScanStats):
        """Record a year's final counters and close its bar"""
        self.year_stats[year]["attempted"] = stats.attempted
        self.close_progress_bar(year)

    def _advance(self, year: int, increment: int):
        bar = self.current_progress_bars.get(year)
        if bar is None:
            return
        bar.update(increment)
        counters = self.year_stats[year]
        bar.set_postfix(ok=counters["downloaded"], nf=counters["not_found"], err=counters["error"],
                        refresh=False)

    def close_progress_bar(self, year: int):
        if year in self.current_progress_bars:
            self.current_progress_bars[year].close()
            del self.current_progress_bars[year]

    def generate_report(self, stats: ScanStats) -> str:
        """Generate the final scan report"""
        total_duration = time.time() - self.start_time

        report_lines = []
        report_lines.append("=" * 60)
        report_lines.append("DECREE CRAWLER - SCAN REPORT")
        report_lines.append("=" * 60)
        report_lines.append(f"Scan completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        report_lines.append(f"Total duration: {format_duration(total_duration)}")
        report_lines.append("")

        report_lines.append("OVERALL STATISTICS")
        report_lines.append("-" * 30)
        report_lines.append(f"Attempted: {stats.attempted}")
        report_lines.append(f"Downloaded (OCR ok): {stats.downloaded}")
        report_lines.append(f"Not found: {stats.not_found}")
        report_lines.append(f"Errors: {stats.errors}")
        report_lines.append(f"Skipped: {stats.skipped} "
                            f"({stats.skipped_known_not_found} in known not_found ranges)")
        report_lines.append(f"Total size downloaded: {format_file_size(self.stats.get('total_size', 0))}")

        if self.year_stats:
            report_lines.append("")
            report_lines.append("YEAR BREAKDOWN")
            report_lines.append("-" * 30)
            for year in sorted(self.year_stats):
                counters = self.year_stats[year]
                report_lines.append(
                    f"{year}: {counters['downloaded']} downloaded, {counters['not_found']} not found, "
                    f"{counters['error']} errors, {counters['excluded']} excluded, "
                    f"{counters['skipped'] + counters['skipped_known']} skipped"
                )

        report_lines.append("=" * 60)
        return "\n".join(report_lines)

    def save_report(self, stats: ScanStats, format: str = "json", output_dir: str = ".") -> str:
        """Save the scan report as JSON or CSV and return the file path"""
        timestamp = get_file_timestamp()

        if format.lower() == "json":
            filename = os.path.join(output_dir, f"scan_report_{timestamp}.json")
            self._save_json_report(stats, filename)
        elif format.lower() == "csv":
            filename = os.path.join(output_dir, f"scan_report_{timestamp}.csv")
            self._save_csv_report(filename)
        else:
            raise ValueError(f"Unsupported format: {format}. Use 'json' or 'csv'")

        print(f"Report saved to: {filename}")
        return filename

    def _save_json_report(self, stats: ScanStats, filename: str):
        report_data = {
            "timestamp": datetime.now().isoformat(),
            "total_duration": time.time() - self.start_time,
            "overall_stats": dict(stats.as_dict(), total_size_bytes=self.stats.get("total_size", 0)),
            "years": [
                dict(year=year, **self.year_stats[year]) for year in sorted(self.year_stats)
            ],
        }
        with open(filename, 'w', encoding='utf-8') as f:
            json.dump(report_data, f, indent=2, ensure_ascii=False)

    def _save_csv_report(self, filename: str):
        with open(filename, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                'Year', 'Attempted', 'Downloaded', 'Not_Found', 'Errors',
                'Excluded', 'Skipped', 'Skipped_Known_Not_Found', 'Total_Size_KB',
            ])
            for year in sorted(self.year_stats):
                counters = self.year_stats[year]
                writer.writerow([
                    year,
                    counters['attempted'],
                    counters['downloaded'],
                    counters['not_found'],
                    counters['error'],
                    counters['excluded'],
                    counters['skipped'],
                    counters['skipped_known'],
                    round(counters['total_size'] / 1024, 1),
                ])

    def print_final_summary(self, stats: ScanStats):
        print(self.generate_report(stats))


def format_run_history(name: Optional[str], logs: Sequence[RunLog], aggregate: RunLogAggregate,
                       overview: Optional[Dict[str, Any]] = None) -> str:
    """Render recent run logs of a job with their aggregate"""
    lines: List[str] = []
    lines.append("=" * 60)
    lines.append(f"RUN HISTORY - {name or 'all jobs'}")
    lines.append("=" * 60)

    if not logs:
        lines.append("No runs recorded.")
    for log in logs:
        lines.append(
            f"{log.started_at.strftime('%Y-%m-%d %H:%M:%S')}  {log.name:<9} "
            f"{log.duration_sec:7.1f}s  attempted={log.attempted} downloaded={log.downloaded} "
            f"not_found={log.not_found} errors={log.errors} skipped={log.skipped}"
        )

    lines.append("")
    lines.append("AGGREGATE")
    lines.append("-" * 30)
    lines.append(f"Runs: {aggregate.count}")
    lines.append(f"Average duration: {aggregate.avg_duration_sec:.1f}s")
    lines.append(f"Average errors: {aggregate.avg_errors:.2f}")
    lines.append(f"Totals: attempted={aggregate.attempted} downloaded={aggregate.downloaded} "
                 f"not_found={aggregate.not_found} errors={aggregate.errors} skipped={aggregate.skipped}")

    if overview:
        lines.append("")
        lines.append("STORAGE")
        lines.append("-" * 30)
        lines.append(f"Documents: {overview['documents']}")
        lines.append(f"Stored text: {format_file_size(overview['total_bytes'])}")
        if 'max_bytes' in overview:
            lines.append(f"Budget: {format_file_size(int(overview['max_bytes']))} "
                         f"({overview['usage_ratio']:.1%} used)")

    lines.append("=" * 60)
    return "\n".join(lines)
