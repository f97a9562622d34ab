"""
Data Models Module

This module contains the dataclass definitions shared across the decree crawler:
the records handed out by the storage gateway, the per-index unit outcomes and
the aggregated results of scans, compaction and purge runs.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional


# CrawlAttempt statuses
STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_NOT_FOUND = "not_found"
STATUS_ERROR = "error"
STATUS_EXCLUDED = "excluded"

# FilterRule vocabulary
RULE_TYPES = ("exclude", "include", "protect")
RULE_FIELDS = ("title", "text", "url", "tag", "category")
RULE_MODES = ("contains", "startsWith", "endsWith", "regex")

JOB_NAMES = ("latest", "backfill", "purge")


@dataclass
class CrawlAttempt:
    """Per-URL crawl state"""
    id: int
    url: str
    year: Optional[int]
    index: Optional[int]
    status: str
    attempts: int = 0
    last_visited_at: Optional[datetime] = None
    http_status: Optional[int] = None
    last_error: Optional[str] = None
    document_id: Optional[int] = None


@dataclass
class Document:
    """A finalized, OCRed decree"""
    id: int
    url: str
    year: int
    index: int
    text: str
    byte_size: int
    ocr_provider: Optional[str] = None
    ocr_confidence: Optional[float] = None
    title: Optional[str] = None
    tag: Optional[str] = None
    category: Optional[str] = None
    user_edited: bool = False
    created_at: Optional[datetime] = None


@dataclass
class NotFoundRange:
    """Closed interval of confirmed-absent indices for one year"""
    id: int
    year: int
    start_index: int
    end_index: int
    count: int

    def contains(self, index: int) -> bool:
        return self.start_index <= index <= self.end_index


@dataclass
class FilterRule:
    id: int
    rule_type: str
    field: str
    mode: str
    pattern: str
    active: bool = True
    created_at: Optional[datetime] = None


@dataclass
class RunLog:
    """One periodic job invocation"""
    id: int
    name: str
    started_at: datetime
    duration_sec: float
    attempted: int = 0
    downloaded: int = 0
    not_found: int = 0
    errors: int = 0
    skipped: int = 0
    extra: Optional[Dict[str, Any]] = None


@dataclass
class RunLogAggregate:
    """Server-side aggregation over a set of run logs"""
    count: int = 0
    avg_duration_sec: float = 0.0
    avg_errors: float = 0.0
    attempted: int = 0
    downloaded: int = 0
    not_found: int = 0
    errors: int = 0
    skipped: int = 0


@dataclass
class UnitOutcome:
    """Result of processing a single (year, index) position"""
    year: int
    index: int
    url: str
    outcome: str  # downloaded | not_found | excluded | skipped | error
    http_status: Optional[int] = None
    document_id: Optional[int] = None
    byte_size: int = 0
    error: Optional[str] = None


@dataclass
class ScanStats:
    """Aggregate counters of a scan"""
    attempted: int = 0
    downloaded: int = 0
    not_found: int = 0
    errors: int = 0
    skipped: int = 0
    skipped_known_not_found: int = 0

    def merge(self, other: "ScanStats") -> "ScanStats":
        """Add another scan's counters into this one and return self"""
        self.attempted += other.attempted
        self.downloaded += other.downloaded
        self.not_found += other.not_found
        self.errors += other.errors
        self.skipped += other.skipped
        self.skipped_known_not_found += other.skipped_known_not_found
        return self

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class CompactionResult:
    ranges_created: int = 0
    ranges_extended: int = 0
    rows_deleted: int = 0


@dataclass
class PurgeResult:
    deleted: int = 0
    freed_bytes: int = 0
    total_after: int = 0


@dataclass
class JobResult:
    """What an orchestrator invocation reports back to its trigger"""
    name: str
    skipped: bool = False
    reason: Optional[str] = None
    stats: ScanStats = field(default_factory=ScanStats)
    duration_sec: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)
