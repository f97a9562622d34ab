"""
Periodic Jobs Module

The three externally scheduled jobs: "latest" (fresh decrees of the current
year), "backfill" (older years, once "latest" has gone quiet) and "purge"
(storage budget). Each job reads its parameters merged over defaults, does its
work, re-tunes its batch size from how the run went, persists the new
parameters with run telemetry, logs the run and prunes old run logs.
"""

import math
import time
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from compactor import compact_not_found
from config import (
    AppConfig, ConfigError, JobConfig, JobParams, JOB_PARAMS, load_api_keys,
)
from crawler import DecreeScanner, ScanOptions
from models import JobResult, ScanStats
from ocr import OCROptions
from purge import enforce_storage_budget, storage_overview
from storage import Repository
from utils import utcnow


def load_job_config(repository: Repository, name: str) -> JobConfig:
    """Read a job's enabled flag and its params merged over the defaults"""
    if name not in JOB_PARAMS:
        raise ValueError(f"Unknown job: {name}")
    enabled, stored = repository.get_job_config(name)
    return JobConfig(name=name, enabled=enabled, params=JOB_PARAMS[name].merge_params(stored))


def ema(prev: Optional[float], value: float, alpha: float = 0.3) -> float:
    """Exponential moving average; the first observation seeds it"""
    if prev is None or (isinstance(prev, float) and math.isnan(prev)):
        return value
    return alpha * value + (1 - alpha) * prev


def tune_batch(current: int, duration_sec: float, errors: int, floor: int, ceiling: int,
               fast_sec: float, slow_sec: float) -> int:
    """
    Adjust a batch size from the last run.

    Slow or erroring runs shrink the batch by a quarter (at least 1); fast and
    clean runs grow it by a quarter (at least 1). The result stays within
    [floor, ceiling].
    """
    step = max(1, current // 4)
    if errors > 0 or duration_sec > slow_sec:
        new = current - step
    elif duration_sec < fast_sec:
        new = current + step
    else:
        new = current
    return max(floor, min(ceiling, new))


def adapt_purge_batch(current: int, overshoot: float, floor: int, ceiling: int) -> int:
    """
    Size the delete batch from how far storage is over budget.

    Args:
        current: Current max_deletes_per_run
        overshoot: (total - budget) / budget; zero or negative when under budget
        floor: Smallest allowed batch
        ceiling: Largest allowed batch
    """
    if overshoot <= 0:
        new = current // 2
    elif overshoot >= 0.5:
        new = current * 2
    elif overshoot >= 0.1:
        new = int(current * 1.5)
    else:
        new = current
    return max(floor, min(ceiling, new))


class JobRunner:
    """Runs the periodic jobs against one repository"""

    def __init__(self, repository: Repository, config: AppConfig,
                 api_keys: Optional[Sequence[str]] = None,
                 scanner_factory: Optional[Callable[[List[str]], DecreeScanner]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Args:
            repository: Storage gateway
            config: Application configuration
            api_keys: OCR keys; read from the environment when omitted
            scanner_factory: Builds the scanner from the API keys (tests inject fakes)
            clock: Source of "now", used to pick the current year
        """
        self.repository = repository
        self.config = config
        self.api_keys = list(api_keys) if api_keys is not None else None
        self.scanner_factory = scanner_factory or self._default_scanner
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _default_scanner(self, api_keys: List[str]) -> DecreeScanner:
        return DecreeScanner.from_config(self.config, self.repository, api_keys)

    def _resolve_api_keys(self) -> Optional[List[str]]:
        if self.api_keys:
            return self.api_keys
        try:
            return load_api_keys(self.config)
        except ConfigError as e:
            self.logger.warning(f"OCR unavailable, job skipped: {e}")
            return None

    def _scan_options(self, params: JobParams, start_index: int, end_index: int,
                      limit_per_year: int = 0) -> ScanOptions:
        ocr_config = self.config.ocr
        return ScanOptions(
            start_index=start_index,
            end_index=end_index,
            concurrency=params.concurrency,
            gap_limit=params.gap_limit,
            limit_per_year=limit_per_year,
            head_check=params.head_check,
            timeout_ms=params.timeout_ms,
            user_agent=self.config.settings.user_agent,
            http_retries=self.config.settings.http_retries,
            max_ocr_kb=params.max_ocr_kb,
            max_pages_per_call=params.max_pages_per_call,
            ocr=OCROptions(
                language=params.language,
                detect_orientation=ocr_config.detect_orientation,
                scale=ocr_config.scale,
                is_table=ocr_config.is_table,
                engine=ocr_config.engine,
            ),
        )

    def run(self, name: str) -> JobResult:
        handlers = {
            'latest': self.run_latest,
            'backfill': self.run_backfill,
            'purge': self.run_purge,
        }
        if name not in handlers:
            raise ValueError(f"Unknown job: {name}")
        return handlers[name]()

    def run_latest(self) -> JobResult:
        """Scan forward from the newest known decree of the current year"""
        job = load_job_config(self.repository, 'latest')
        params = job.params
        if not job.enabled:
            return JobResult(name='latest', skipped=True, reason='disabled')

        api_keys = self._resolve_api_keys()
        if api_keys is None:
            return JobResult(name='latest', skipped=True, reason='missing OCR API key')

        started_at = utcnow()
        start_time = time.time()

        year = self.clock().year
        start_index = self.repository.max_success_index(year) + 1
        end_index = start_index + params.batch - 1
        self.logger.info(f"latest: scanning {year} [{start_index}-{end_index}]")

        scanner = self.scanner_factory(api_keys)
        stats = scanner.scan([year], self._scan_options(params, start_index, end_index, params.limit_per_year))
        compaction = compact_not_found(self.repository, [year])

        duration = time.time() - start_time
        new_batch = tune_batch(params.batch, duration, stats.errors, params.min_batch, params.max_batch,
                               params.fast_run_sec, params.slow_run_sec)
        quiet_runs = params.quiet_runs + 1 if stats.downloaded == 0 else 0

        extra = {
            'year': year,
            'window': [start_index, end_index],
            'tuning': {'batch': [params.batch, new_batch]},
            'quiet_runs': quiet_runs,
            'compaction': asdict(compaction),
        }
        return self._finish('latest', params, started_at, duration, stats,
                            {'batch': new_batch, 'quiet_runs': quiet_runs}, extra)

    def run_backfill(self) -> JobResult:
        """Scan prior years once the latest job has been quiet long enough"""
        job = load_job_config(self.repository, 'backfill')
        params = job.params
        if not job.enabled:
            return JobResult(name='backfill', skipped=True, reason='disabled')

        latest = load_job_config(self.repository, 'latest').params
        if latest.quiet_runs < params.need_quiet_runs:
            reason = f"waiting for quiet period ({latest.quiet_runs}/{params.need_quiet_runs} quiet latest runs)"
            self.logger.info(f"backfill: {reason}")
            return JobResult(name='backfill', skipped=True, reason=reason)

        api_keys = self._resolve_api_keys()
        if api_keys is None:
            return JobResult(name='backfill', skipped=True, reason='missing OCR API key')

        started_at = utcnow()
        start_time = time.time()

        current_year = self.clock().year
        years = [current_year - offset for offset in range(1, params.years_count + 1)]
        scanner = self.scanner_factory(api_keys)
        stats = ScanStats()
        windows = {}

        for year in years:
            start_index = self.repository.max_success_index(year) + 1
            end_index = start_index + params.batch_per_year - 1
            windows[str(year)] = [start_index, end_index]
            self.logger.info(f"backfill: scanning {year} [{start_index}-{end_index}]")
            stats.merge(scanner.scan([year], self._scan_options(params, start_index, end_index)))

        compaction = compact_not_found(self.repository, years)

        duration = time.time() - start_time
        new_batch = tune_batch(params.batch_per_year, duration, stats.errors, params.min_batch,
                               params.max_batch, params.fast_run_sec, params.slow_run_sec)
        extra = {
            'years': years,
            'windows': windows,
            'tuning': {'batch_per_year': [params.batch_per_year, new_batch]},
            'compaction': asdict(compaction),
        }
        return self._finish('backfill', params, started_at, duration, stats,
                            {'batch_per_year': new_batch}, extra)

    def run_purge(self) -> JobResult:
        """Bring storage back under budget, sizing the delete batch from the overshoot"""
        job = load_job_config(self.repository, 'purge')
        params = job.params
        if not job.enabled:
            return JobResult(name='purge', skipped=True, reason='disabled')

        started_at = utcnow()
        start_time = time.time()

        total = self.repository.total_document_bytes()
        overshoot = (total - params.max_bytes) / params.max_bytes if params.max_bytes > 0 else 0.0
        batch = adapt_purge_batch(params.max_deletes_per_run, overshoot, params.min_deletes, params.max_deletes)
        self.logger.info(f"purge: {total} bytes stored, budget {params.max_bytes}, "
                         f"overshoot {overshoot:.1%}, delete batch {batch}")

        result = enforce_storage_budget(self.repository, params.max_bytes, batch)

        duration = time.time() - start_time
        # Duration only ever slows purge down; growth comes from the overshoot
        tuned = min(batch, tune_batch(batch, duration, 0, params.min_deletes, params.max_deletes,
                                      params.fast_run_sec, params.slow_run_sec))
        extra = {
            'total_before': total,
            'overshoot': round(overshoot, 4),
            'deleted': result.deleted,
            'freed_bytes': result.freed_bytes,
            'total_after': result.total_after,
            'storage': storage_overview(self.repository, params.max_bytes),
            'tuning': {'max_deletes_per_run': [params.max_deletes_per_run, tuned]},
        }
        return self._finish('purge', params, started_at, duration, ScanStats(),
                            {'max_deletes_per_run': tuned}, extra)

    def _finish(self, name: str, params: JobParams, started_at: datetime, duration: float,
                stats: ScanStats, changes: dict, extra: dict) -> JobResult:
        changes = dict(changes)
        changes.update({
            'last_run_at': utcnow().isoformat(),
            'ema_duration_sec': ema(params.ema_duration_sec, duration),
            'ema_errors': ema(params.ema_errors, float(stats.errors)),
        })
        self.repository.upsert_job_params(name, changes)

        self.repository.create_run_log(name, started_at, duration, stats=stats.as_dict(), extra=extra)
        pruned = self.repository.prune_run_logs(name, params.run_log_keep)
        if pruned:
            self.logger.debug(f"{name}: pruned {pruned} old run logs")

        self.logger.info(f"{name}: done in {duration:.1f}s - {stats.downloaded} downloaded, "
                         f"{stats.not_found} not found, {stats.errors} errors, {stats.skipped} skipped")
        return JobResult(name=name, stats=stats, duration_sec=duration, extra=extra)
