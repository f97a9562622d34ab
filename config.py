"""
Configuration management for the decree crawler.

This module handles loading application settings from YAML files, reading the
OCR credentials from the environment, and the typed parameter sets of the
periodic jobs (merged over hardcoded defaults when read from storage).
"""

import os
import re
import yaml
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional
from pathlib import Path


DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; decrets-crawler/0.1)"


class ConfigError(Exception):
    """Raised when the configuration makes any work impossible (e.g. no OCR key)."""


@dataclass
class SiteConfig:
    """Where decrees are published."""
    host: str = "sgg.gouv.bj"
    url_template: str = "https://{host}/doc/decret-{year}-{index}/download"


@dataclass
class CrawlSettings:
    """Default crawl settings for ad hoc runs."""
    concurrency: int = 5
    gap_limit: int = 100
    timeout_ms: int = 10000
    head_check: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    language: str = "fre"
    error_limit: int = 50
    max_ocr_kb: int = 1024
    max_pages_per_call: int = 3
    http_retries: int = 2


@dataclass
class OCRConfig:
    """OCR.space client settings."""
    endpoint: str = "https://api.ocr.space/parse/image"
    request_timeout: int = 120
    api_key_env: str = "OCR_API_KEY"
    engine: int = 2
    detect_orientation: bool = True
    scale: bool = True
    is_table: bool = False


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///decrets.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AppConfig:
    """Main configuration object containing all settings."""
    site: SiteConfig = field(default_factory=SiteConfig)
    settings: CrawlSettings = field(default_factory=CrawlSettings)
    ocr: OCRConfig = field(default_factory=OCRConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_section(cls, data: Dict[str, Any], name: str):
    """Build one config dataclass from its YAML mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Configuration section '{name}' must be a dictionary")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in section '{name}': {', '.join(unknown)}")
    return cls(**data)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    Without a path the built-in defaults are used. In both cases the
    DATABASE_URL environment variable, when set, overrides the database URL.

    Args:
        config_path: Optional path to the YAML configuration file

    Returns:
        AppConfig object with loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        ValueError: If configuration is invalid
    """
    data: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Failed to parse YAML configuration: {e}")

        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping")

    config = AppConfig(
        site=_build_section(SiteConfig, data.get('site'), 'site'),
        settings=_build_section(CrawlSettings, data.get('settings'), 'settings'),
        ocr=_build_section(OCRConfig, data.get('ocr'), 'ocr'),
        database=_build_section(DatabaseConfig, data.get('database'), 'database'),
        logging=_build_section(LoggingConfig, data.get('logging'), 'logging'),
    )

    if config.settings.concurrency < 1:
        raise ValueError("settings.concurrency must be at least 1")
    if config.settings.gap_limit < 1:
        raise ValueError("settings.gap_limit must be at least 1")
    if config.settings.error_limit < 0:
        raise ValueError("settings.error_limit must not be negative")
    if config.ocr.engine not in (1, 2, 3):
        raise ValueError("ocr.engine must be 1, 2 or 3")
    if '{year}' not in config.site.url_template or '{index}' not in config.site.url_template:
        raise ValueError("site.url_template must contain {year} and {index}")

    database_url = os.environ.get('DATABASE_URL')
    if database_url:
        config.database.url = database_url

    return config


def save_config_to_yaml(config: AppConfig, output_path: str) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: AppConfig object to save
        output_path: Path where to save the YAML file
    """
    config_dict = {
        'site': asdict(config.site),
        'settings': asdict(config.settings),
        'ocr': asdict(config.ocr),
        'database': asdict(config.database),
        'logging': asdict(config.logging),
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False, indent=2)


def parse_api_keys(raw: Optional[str]) -> List[str]:
    """Split a ';' or ',' separated key list, dropping blanks."""
    if not raw:
        return []
    return [key.strip() for key in re.split(r'[;,]', raw) if key.strip()]


def load_api_keys(config: AppConfig) -> List[str]:
    """
    Read the OCR API keys from the configured environment variable.

    Raises:
        ConfigError: If the variable is unset or holds no usable key
    """
    raw = os.environ.get(config.ocr.api_key_env)
    if not raw:
        raise ConfigError(f"{config.ocr.api_key_env} is not set")

    keys = parse_api_keys(raw)
    if not keys:
        raise ConfigError(f"No valid OCR API key found in {config.ocr.api_key_env}")
    return keys


@dataclass
class JobParams:
    """Parameters and telemetry shared by every periodic job."""
    run_log_keep: int = 5
    fast_run_sec: float = 10.0
    slow_run_sec: float = 20.0
    last_run_at: Optional[str] = None
    ema_duration_sec: Optional[float] = None
    ema_errors: Optional[float] = None

    @classmethod
    def merge_params(cls, stored: Optional[Dict[str, Any]]):
        """
        Overlay a stored parameter bag on the defaults.

        Keys that this version does not know about are ignored here; they stay
        untouched in storage because writes are partial merges.
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (stored or {}).items() if k in known}
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LatestParams(JobParams):
    batch: int = 3
    min_batch: int = 1
    max_batch: int = 50
    concurrency: int = 1
    gap_limit: int = 10
    limit_per_year: int = 3
    timeout_ms: int = 8000
    head_check: bool = True
    language: str = "fre"
    max_ocr_kb: int = 1024
    max_pages_per_call: int = 3
    quiet_runs: int = 0


@dataclass
class BackfillParams(JobParams):
    years_count: int = 2
    batch_per_year: int = 3
    min_batch: int = 1
    max_batch: int = 30
    # consecutive quiet 'latest' runs required before backfill may run
    need_quiet_runs: int = 4
    concurrency: int = 1
    gap_limit: int = 20
    timeout_ms: int = 8000
    head_check: bool = True
    language: str = "fre"
    max_ocr_kb: int = 1024
    max_pages_per_call: int = 3


@dataclass
class PurgeParams(JobParams):
    max_bytes: int = int(0.5 * 1024 * 1024 * 1024)
    max_deletes_per_run: int = 100
    min_deletes: int = 10
    max_deletes: int = 1000


JOB_PARAMS = {
    'latest': LatestParams,
    'backfill': BackfillParams,
    'purge': PurgeParams,
}


@dataclass
class JobConfig:
    """A job's enabled flag plus its typed parameters."""
    name: str
    enabled: bool
    params: JobParams
