"""
Main Crawling Logic Module

This module contains the DecreeScanner that walks the (year, index) address
space of published decrees. For each year it skips known not-found ranges,
dispatches per-index units (probe, download, OCR, filter, persist) to a
bounded worker pool and stops once too many consecutive indices came back
absent. The coordinating loop is the only place where counters change.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from config import AppConfig, CrawlSettings, OCRConfig, SiteConfig, DEFAULT_USER_AGENT
from concurrency import BoundedDispatcher
from filters import ContentFilter
from models import (
    ScanStats, UnitOutcome,
    STATUS_SUCCESS, STATUS_NOT_FOUND, STATUS_ERROR, STATUS_EXCLUDED,
)
from ocr import OCROptions, OCRSpaceClient
from prober import URLProber
from storage import Repository
from utils import unit_prefix


# Upper bound on simultaneously outstanding units, whatever concurrency is asked for
MAX_IN_FLIGHT = 200

OUTCOME_DOWNLOADED = "downloaded"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_EXCLUDED = "excluded"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


def build_url(year: int, index: int, site: Optional[SiteConfig] = None) -> str:
    """Deterministic download URL of decree {year}-{index}"""
    site = site or SiteConfig()
    return site.url_template.format(host=site.host, year=year, index=index)


def resolve_years(start_year: int, end_year: int, limit_years: int = 0) -> List[int]:
    """
    Years to scan, in scan order.

    With limit_years the most recent limit_years years ending at end_year are
    returned (oldest first); otherwise start_year..end_year.
    """
    if limit_years and limit_years > 0:
        return list(range(end_year - limit_years + 1, end_year + 1))
    return list(range(start_year, end_year + 1))


@dataclass
class ScanOptions:
    """Window, pacing and OCR settings of one scan"""
    start_index: int = 1
    end_index: Optional[int] = None  # None: unbounded, the gap limit ends the year
    concurrency: int = 5
    gap_limit: int = 100
    limit_per_year: int = 0  # 0: unlimited
    error_limit: int = 50  # consecutive errors ending an unbounded year; 0: never
    head_check: bool = True
    timeout_ms: int = 10000
    user_agent: str = DEFAULT_USER_AGENT
    http_retries: int = 0
    max_ocr_kb: int = 1024
    max_pages_per_call: int = 3
    ocr: OCROptions = field(default_factory=OCROptions)

    @classmethod
    def from_settings(cls, settings: CrawlSettings, ocr_config: Optional[OCRConfig] = None, **overrides):
        """Options seeded from the configured crawl settings, then overridden"""
        ocr_config = ocr_config or OCRConfig()
        language = overrides.pop('language', settings.language)
        options = cls(
            concurrency=settings.concurrency,
            gap_limit=settings.gap_limit,
            error_limit=settings.error_limit,
            head_check=settings.head_check,
            timeout_ms=settings.timeout_ms,
            user_agent=settings.user_agent,
            http_retries=settings.http_retries,
            max_ocr_kb=settings.max_ocr_kb,
            max_pages_per_call=settings.max_pages_per_call,
            ocr=OCROptions(
                language=language,
                detect_orientation=ocr_config.detect_orientation,
                scale=ocr_config.scale,
                is_table=ocr_config.is_table,
                engine=ocr_config.engine,
            ),
        )
        for key, value in overrides.items():
            if not hasattr(options, key):
                raise TypeError(f"Unknown scan option: {key}")
            setattr(options, key, value)
        return options


@dataclass
class _YearProgress:
    consecutive_not_found: int = 0
    consecutive_errors: int = 0
    found: int = 0


class DecreeScanner:
    """Gap-limited scanner over the (year, index) decree space"""

    def __init__(self, repository: Repository, ocr_client: OCRSpaceClient, api_keys: Sequence[str],
                 site: Optional[SiteConfig] = None,
                 prober_factory: Optional[Callable[["ScanOptions"], URLProber]] = None,
                 reporter=None):
        """
        Args:
            repository: Storage gateway
            ocr_client: OCR client used on every downloaded body
            api_keys: OCR API keys, tried in order on quota failures
            site: Host and URL template
            prober_factory: Builds the URLProber for a scan (defaults to one per scan)
            reporter: Optional ProgressReporter receiving per-year progress
        """
        self.repository = repository
        self.ocr_client = ocr_client
        self.api_keys = list(api_keys)
        self.site = site or SiteConfig()
        self.prober_factory = prober_factory or self._default_prober
        self.reporter = reporter
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: AppConfig, repository: Repository, api_keys: Sequence[str], reporter=None):
        ocr_client = OCRSpaceClient(endpoint=config.ocr.endpoint, timeout=config.ocr.request_timeout)
        return cls(repository, ocr_client, api_keys, site=config.site, reporter=reporter)

    @staticmethod
    def _default_prober(options: ScanOptions) -> URLProber:
        return URLProber(
            user_agent=options.user_agent,
            timeout_ms=options.timeout_ms,
            head_check=options.head_check,
            retries=options.http_retries,
            pool_size=max(1, options.concurrency) * 2,
        )

    def build_url(self, year: int, index: int) -> str:
        return build_url(year, index, self.site)

    def scan(self, years: Sequence[int], options: Optional[ScanOptions] = None) -> ScanStats:
        """
        Scan the given years over the options' index window.

        Args:
            years: Years in scan order
            options: Window, concurrency, gap limit, probe and OCR settings

        Returns:
            ScanStats aggregated over all years
        """
        options = options or ScanOptions()
        start_time = time.time()
        stats = ScanStats()

        content_filter = ContentFilter(self.repository.list_filter_rules(active_only=True))
        prober = self.prober_factory(options)
        workers = min(max(1, options.concurrency), MAX_IN_FLIGHT)

        self.logger.info(f"Scanning years {list(years)} from index {options.start_index} "
                         f"to {options.end_index or 'gap limit'} "
                         f"(concurrency={workers}, gap_limit={options.gap_limit})")
        try:
            with BoundedDispatcher(max_workers=workers) as dispatcher:
                for year in years:
                    stats.merge(self._scan_year(year, options, dispatcher, prober, content_filter))
        finally:
            prober.close()

        self.logger.info(f"Scan finished in {time.time() - start_time:.1f}s: {stats.downloaded} OCR ok, "
                         f"{stats.not_found} not found, {stats.errors} errors, {stats.skipped} skipped "
                         f"(attempted={stats.attempted})")
        return stats

    def _scan_year(self, year: int, options: ScanOptions, dispatcher: BoundedDispatcher,
                   prober: URLProber, content_filter: ContentFilter) -> ScanStats:
        stats = ScanStats()
        progress = _YearProgress()
        ranges = self.repository.list_ranges(year)
        range_pos = 0
        index = max(1, options.start_index)
        end_index = options.end_index

        def on_error(key, error):
            unit_year, unit_index, url = key
            return UnitOutcome(year=unit_year, index=unit_index, url=url, outcome=OUTCOME_ERROR, error=str(error))

        def fold_oldest():
            _, outcome = dispatcher.wait_oldest(on_error)
            self._fold(outcome, stats, progress)

        if self.reporter:
            self.reporter.start_year(year)

        while end_index is None or index <= end_index:
            if options.limit_per_year and progress.found >= options.limit_per_year:
                self.logger.info(f"[{year}] limit of {options.limit_per_year} documents reached")
                break
            if progress.consecutive_not_found >= options.gap_limit:
                self.logger.info(f"[{year}] {progress.consecutive_not_found} consecutive misses, stopping year")
                break
            if end_index is None and options.error_limit and progress.consecutive_errors >= options.error_limit:
                self.logger.warning(f"[{year}] {progress.consecutive_errors} consecutive errors with no end index, "
                                    f"stopping year")
                break

            while range_pos < len(ranges) and ranges[range_pos].end_index < index:
                range_pos += 1

            if range_pos < len(ranges) and ranges[range_pos].contains(index):
                # Everything before the range must be folded first so the streak stays in index order
                if dispatcher.in_flight:
                    fold_oldest()
                    continue
                known = ranges[range_pos]
                last = known.end_index if end_index is None else min(known.end_index, end_index)
                jump = last - index + 1
                self.logger.info(f"{unit_prefix(year, index)} ⏭️  known not_found range "
                                 f"[{known.start_index}-{known.end_index}], skipping {jump}")
                stats.skipped += jump
                stats.skipped_known_not_found += jump
                progress.consecutive_not_found += jump
                if self.reporter:
                    self.reporter.track_known_skip(year, jump)
                index = known.end_index + 1
                continue

            if self._window_closed(dispatcher, progress, options):
                fold_oldest()
                continue

            url = self.build_url(year, index)
            stats.attempted += 1
            dispatcher.submit((year, index, url), self.process_index, year, index, url,
                              prober, content_filter, options)
            index += 1

        for _, outcome in dispatcher.drain(on_error):
            self._fold(outcome, stats, progress)

        if self.reporter:
            self.reporter.finish_year(year, stats)
        return stats

    @staticmethod
    def _window_closed(dispatcher: BoundedDispatcher, progress: _YearProgress, options: ScanOptions) -> bool:
        """
        True when no further unit may start before an in-flight one is folded:
        the pool is full, or every in-flight unit turning out absent (or
        successful) could already reach the gap limit (or the per-year quota).
        """
        if dispatcher.full:
            return True
        if progress.consecutive_not_found + dispatcher.in_flight >= options.gap_limit:
            return True
        if options.limit_per_year and progress.found + dispatcher.in_flight >= options.limit_per_year:
            return True
        return False

    def _fold(self, outcome: UnitOutcome, stats: ScanStats, progress: _YearProgress):
        if outcome.outcome == OUTCOME_DOWNLOADED:
            stats.downloaded += 1
            progress.found += 1
            progress.consecutive_not_found = 0
            progress.consecutive_errors = 0
        elif outcome.outcome == OUTCOME_NOT_FOUND:
            stats.not_found += 1
            progress.consecutive_not_found += 1
            progress.consecutive_errors = 0
        elif outcome.outcome in (OUTCOME_EXCLUDED, OUTCOME_SKIPPED):
            stats.skipped += 1
        else:
            stats.errors += 1
            progress.consecutive_errors += 1

        if self.reporter:
            self.reporter.track_outcome(outcome.year, outcome.outcome, outcome.byte_size)

    def process_index(self, year: int, index: int, url: str, prober: URLProber,
                      content_filter: ContentFilter, options: ScanOptions) -> UnitOutcome:
        """
        Process one position: short-circuit on known results, otherwise probe,
        OCR, filter and persist. Runs on a worker thread; touches no counters.
        """
        prefix = unit_prefix(year, index)

        existing_doc = self.repository.find_document(url)
        if existing_doc:
            self.logger.info(f"{prefix} ⏭️  already stored (Document.id={existing_doc.id}), skipping")
            return UnitOutcome(year, index, url, OUTCOME_SKIPPED, document_id=existing_doc.id)

        existing = self.repository.find_attempt(url)
        if existing and existing.status == STATUS_SUCCESS:
            self.logger.info(f"{prefix} ⏭️  already crawled successfully, skipping")
            return UnitOutcome(year, index, url, OUTCOME_SKIPPED, document_id=existing.document_id)

        self.repository.mark_attempt_pending(url, year, index)

        try:
            result = prober.probe(url)
            if not result.found:
                via = "GET after HEAD" if result.confirmed_by_get else "GET"
                self.logger.info(f"{prefix} 🚫 404 confirmed ({via}) → not_found")
                self.repository.update_attempt(url, STATUS_NOT_FOUND, http_status=404)
                return UnitOutcome(year, index, url, OUTCOME_NOT_FOUND, http_status=404)

            self.logger.info(f"{prefix} ⬇️  GET {url} → {result.status_code} ({result.size} bytes)")
            self.logger.debug(f"{prefix} 🧠 OCR in progress...")
            ocr_result = self.ocr_client.extract(
                result.content,
                self.api_keys,
                options.ocr,
                max_size_bytes=options.max_ocr_kb * 1024,
                max_pages_per_call=options.max_pages_per_call,
            )
            self.logger.info(f"{prefix} 🧠 OCR ok ({len(ocr_result.text)} characters)")

            decision = content_filter.evaluate(url=url, text=ocr_result.text)
            if decision.exclude:
                self.logger.info(f"{prefix} 🧹 excluded by rule ({decision.reason}), not stored")
                self.repository.update_attempt(url, STATUS_EXCLUDED, http_status=result.status_code)
                return UnitOutcome(year, index, url, OUTCOME_EXCLUDED, http_status=result.status_code)

            document = self.repository.upsert_document(
                url, year, index, ocr_result.text, result.size, ocr_result.provider,
            )
            self.repository.update_attempt(url, STATUS_SUCCESS, http_status=result.status_code,
                                           document_id=document.id)
            self.logger.info(f"{prefix} 💾 Document stored (id={document.id})")
            return UnitOutcome(year, index, url, OUTCOME_DOWNLOADED, http_status=result.status_code,
                               document_id=document.id, byte_size=result.size)

        except Exception as e:
            message = str(e) or e.__class__.__name__
            self.logger.error(f"{prefix} ❌ Error: {message}")
            self.repository.update_attempt(url, STATUS_ERROR, http_status=None, last_error=message)
            return UnitOutcome(year, index, url, OUTCOME_ERROR, error=message)
