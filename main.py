#!/usr/bin/env python3
"""
Decree Crawler - Main Entry Point

Command-line interface of the decree crawler. It runs ad hoc scans over a
range of years, triggers the periodic jobs (latest, backfill, purge), shows
job run history and manages a few stored settings.

Usage Examples:
    python main.py --start-year 2023 --end-year 2024 --concurrency 8
    python main.py --limit-years 2 --limit-per-year 20 --head-check false
    python main.py --job latest
    python main.py --runs latest --since 2024-01-01
"""

import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

from config import AppConfig, ConfigError, load_api_keys, load_config
from crawler import DecreeScanner, ScanOptions, resolve_years
from jobs import JobRunner, load_job_config
from models import JOB_NAMES, RULE_FIELDS, RULE_MODES, RULE_TYPES, ScanStats
from purge import storage_overview
from reporter import ProgressReporter, format_run_history
from storage import SQLRepository
from utils import setup_logging


def parse_bool(value: str) -> bool:
    """Boolean flag value: true/false, yes/no, 1/0, on/off"""
    normalized = str(value).strip().lower()
    if normalized in ('1', 'true', 'yes', 'on'):
        return True
    if normalized in ('0', 'false', 'no', 'off'):
        return False
    raise argparse.ArgumentTypeError(f"Expected a boolean value, got '{value}'")


def parse_since(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an ISO date or datetime, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    current_year = datetime.now().year
    parser = argparse.ArgumentParser(
        description='Decree Crawler - Discover, OCR and store published decrees',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --start-year 2023 --end-year 2024
  %(prog)s --limit-years 2 --limit-per-year 20
  %(prog)s --job latest
  %(prog)s --runs backfill --since 2024-01-01
        """
    )

    scan = parser.add_argument_group('scan')
    scan.add_argument('--start-year', type=int, default=current_year,
                      help='First year to scan (default: current year)')
    scan.add_argument('--end-year', type=int, default=current_year,
                      help='Last year to scan (default: current year)')
    scan.add_argument('--concurrency', type=int,
                      help='Simultaneous units (default: from config, 5)')
    scan.add_argument('--limit-years', type=int, default=0,
                      help='Only scan the N most recent years ending at --end-year')
    scan.add_argument('--limit-per-year', type=int, default=0,
                      help='Stop a year after N stored documents (default: unlimited)')
    scan.add_argument('--gap-limit', type=int,
                      help='Consecutive absent indices that end a year (default: from config, 100)')
    scan.add_argument('--user-agent', help='User-Agent header of probe requests')
    scan.add_argument('--start-index', type=int, default=1, help='First index of each year (default: 1)')
    scan.add_argument('--end-index', type=int,
                      help='Last index of each year (default: unbounded, the year ends after gap_limit '
                           'misses or error_limit consecutive errors)')
    scan.add_argument('--timeout-ms', type=int, help='Per-request timeout in milliseconds')
    scan.add_argument('--head-check', type=parse_bool, nargs='?', const=True,
                      help='Probe with HEAD before GET (default: true)')
    scan.add_argument('--language', help='OCR language code (default: fre)')

    jobs = parser.add_argument_group('jobs')
    jobs.add_argument('--job', choices=JOB_NAMES, help='Run one periodic job instead of a scan')
    jobs.add_argument('--runs', metavar='NAME', nargs='?', const='all',
                      help='Show run history of a job (or all jobs)')
    jobs.add_argument('--since', type=parse_since, help='Only runs started at or after this date')
    jobs.add_argument('--enable-job', choices=JOB_NAMES, help='Enable a periodic job')
    jobs.add_argument('--disable-job', choices=JOB_NAMES, help='Disable a periodic job')
    jobs.add_argument('--add-filter', nargs=4, metavar=('TYPE', 'FIELD', 'MODE', 'PATTERN'),
                      help='Store an active filter rule')

    general = parser.add_argument_group('general')
    general.add_argument('--config', help='Configuration file path (YAML)')
    general.add_argument('--log-level', default=None, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                         help='Set logging level (default: from config, INFO)')
    general.add_argument('--log-file', help='Log file path')
    general.add_argument('--no-progress', action='store_true', help='Disable progress bars')
    general.add_argument('--report', choices=['json', 'csv'], help='Save the scan report in this format')

    return parser


def scan_options_from_args(args: argparse.Namespace, config: AppConfig) -> ScanOptions:
    """Scan options from the configured settings with CLI flags applied on top"""
    overrides = {
        'start_index': args.start_index,
        'end_index': args.end_index,
        'limit_per_year': args.limit_per_year,
    }
    for flag in ('concurrency', 'gap_limit', 'timeout_ms', 'head_check', 'user_agent', 'language'):
        value = getattr(args, flag)
        if value is not None:
            overrides[flag] = value
    return ScanOptions.from_settings(config.settings, config.ocr, **overrides)


def run_scan(args: argparse.Namespace, config: AppConfig, repository: SQLRepository) -> ScanStats:
    """Ad hoc scan; aborts before any work without a usable API key"""
    api_keys = load_api_keys(config)
    years = resolve_years(args.start_year, args.end_year, args.limit_years)
    options = scan_options_from_args(args, config)

    print(f"Crawl {years[0] if years else args.start_year} -> {years[-1] if years else args.end_year} "
          f"(concurrency={options.concurrency})")
    reporter = ProgressReporter(show_progress=not args.no_progress)
    scanner = DecreeScanner.from_config(config, repository, api_keys, reporter=reporter)
    stats = scanner.scan(years, options)

    reporter.print_final_summary(stats)
    if args.report:
        reporter.save_report(stats, format=args.report)
    return stats


def show_runs(args: argparse.Namespace, repository: SQLRepository):
    name = None if args.runs == 'all' else args.runs
    logs = repository.list_run_logs(name=name, since=args.since)
    aggregate = repository.aggregate_run_logs(name=name, since=args.since)
    budget = load_job_config(repository, 'purge').params.max_bytes
    print(format_run_history(name, logs, aggregate, storage_overview(repository, budget)))


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = build_parser()
    args, unknown = parser.parse_known_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"❌ Configuration file not found: {args.config}")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Failed to load configuration: {str(e)}")
        sys.exit(1)

    setup_logging(log_level=args.log_level or config.logging.level, log_file=args.log_file or config.logging.file)
    logger = logging.getLogger('decree_crawler')
    if unknown:
        logger.warning(f"Ignoring unknown arguments: {' '.join(unknown)}")

    repository = None
    try:
        repository = SQLRepository(config.database.url)

        if args.add_filter:
            rule_type, field, mode, pattern = args.add_filter
            if rule_type not in RULE_TYPES or field not in RULE_FIELDS or mode not in RULE_MODES:
                parser.error(f"--add-filter expects TYPE in {RULE_TYPES}, FIELD in {RULE_FIELDS}, "
                             f"MODE in {RULE_MODES}")
            rule = repository.create_filter_rule(rule_type, field, mode, pattern)
            print(f"✅ Filter rule #{rule.id} stored: {rule_type} {field} {mode} '{pattern}'")
            return

        if args.enable_job or args.disable_job:
            if args.enable_job:
                repository.set_job_enabled(args.enable_job, True)
                print(f"✅ Job '{args.enable_job}' enabled")
            if args.disable_job:
                repository.set_job_enabled(args.disable_job, False)
                print(f"✅ Job '{args.disable_job}' disabled")
            return

        if args.runs:
            show_runs(args, repository)
            return

        if args.job:
            result = JobRunner(repository, config).run(args.job)
            if result.skipped:
                print(f"⏭️  {result.name} skipped: {result.reason}")
            else:
                stats = result.stats
                print(f"✅ {result.name} finished in {result.duration_sec:.1f}s: {stats.downloaded} OCR ok, "
                      f"{stats.not_found} 404, {stats.errors} errors, {stats.skipped} skipped "
                      f"(attempted={stats.attempted})")
            return

        run_scan(args, config, repository)

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user (Ctrl+C)")
        print("\n⚠️  Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Critical error: {str(e)}", exc_info=True)
        print(f"\n❌ Critical error: {str(e)}")
        sys.exit(1)
    finally:
        if repository is not None:
            repository.close()


if __name__ == "__main__":
    main()
