"""
Storage Gateway Module

This module defines the repository interface the crawler talks to and its
SQLAlchemy implementation. Every operation is atomic per row and commits on
its own; no transaction spans several calls.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, Integer, String, Text,
    and_, create_engine, func, or_, select, delete, update,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from models import (
    CrawlAttempt, Document, NotFoundRange, FilterRule, RunLog, RunLogAggregate,
    STATUS_PENDING, STATUS_SUCCESS, STATUS_NOT_FOUND,
)
from utils import utcnow


Base = declarative_base()


class CrawlAttemptRow(Base):
    __tablename__ = "crawl_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String, unique=True, nullable=False, index=True)
    year = Column(Integer, nullable=True, index=True)
    index = Column("index_no", Integer, nullable=True)
    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_visited_at = Column(DateTime, nullable=True)
    http_status = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    document_id = Column(Integer, nullable=True, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class DocumentRow(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String, unique=True, nullable=False, index=True)
    year = Column(Integer, nullable=False, index=True)
    index = Column("index_no", Integer, nullable=False)
    text = Column(Text, nullable=False, default="")
    byte_size = Column(Integer, nullable=False, default=0)
    ocr_provider = Column(String, nullable=True)
    ocr_confidence = Column(Float, nullable=True)
    title = Column(String, nullable=True)
    tag = Column(String, nullable=True)
    category = Column(String, nullable=True)
    user_edited = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class NotFoundRangeRow(Base):
    __tablename__ = "not_found_ranges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    year = Column(Integer, nullable=False, index=True)
    start_index = Column(Integer, nullable=False)
    end_index = Column(Integer, nullable=False)
    count = Column(Integer, nullable=False)


class FilterRuleRow(Base):
    __tablename__ = "filter_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_type = Column(String(16), nullable=False)
    field = Column(String(16), nullable=False)
    mode = Column(String(16), nullable=False)
    pattern = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RunLogRow(Base):
    __tablename__ = "run_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(16), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False, index=True)
    duration_sec = Column(Float, nullable=False, default=0.0)
    attempted = Column(Integer, nullable=False, default=0)
    downloaded = Column(Integer, nullable=False, default=0)
    not_found = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    extra = Column(JSON, nullable=True)


class JobConfigRow(Base):
    __tablename__ = "job_configs"

    name = Column(String(16), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=True)
    params = Column(JSON, nullable=False, default=dict)


def _to_attempt(row: CrawlAttemptRow) -> CrawlAttempt:
    return CrawlAttempt(
        id=row.id, url=row.url, year=row.year, index=row.index, status=row.status,
        attempts=row.attempts, last_visited_at=row.last_visited_at,
        http_status=row.http_status, last_error=row.last_error, document_id=row.document_id,
    )


def _to_document(row: DocumentRow) -> Document:
    return Document(
        id=row.id, url=row.url, year=row.year, index=row.index, text=row.text,
        byte_size=row.byte_size, ocr_provider=row.ocr_provider,
        ocr_confidence=row.ocr_confidence, title=row.title, tag=row.tag,
        category=row.category, user_edited=row.user_edited, created_at=row.created_at,
    )


def _to_range(row: NotFoundRangeRow) -> NotFoundRange:
    return NotFoundRange(id=row.id, year=row.year, start_index=row.start_index,
                         end_index=row.end_index, count=row.count)


def _to_rule(row: FilterRuleRow) -> FilterRule:
    return FilterRule(id=row.id, rule_type=row.rule_type, field=row.field, mode=row.mode,
                      pattern=row.pattern, active=row.active, created_at=row.created_at)


def _to_run_log(row: RunLogRow) -> RunLog:
    return RunLog(
        id=row.id, name=row.name, started_at=row.started_at, duration_sec=row.duration_sec,
        attempted=row.attempted, downloaded=row.downloaded, not_found=row.not_found,
        errors=row.errors, skipped=row.skipped, extra=row.extra,
    )


class Repository(ABC):
    """Persistence operations needed by the scanner, compactor, purge and jobs"""

    # crawl attempts
    @abstractmethod
    def find_attempt(self, url: str) -> Optional[CrawlAttempt]: ...

    @abstractmethod
    def mark_attempt_pending(self, url: str, year: int, index: int) -> CrawlAttempt:
        """Create the attempt or bump its attempt count; status becomes pending."""

    @abstractmethod
    def update_attempt(self, url: str, status: str, http_status: Optional[int] = None,
                       last_error: Optional[str] = None, document_id: Optional[int] = None) -> None: ...

    @abstractmethod
    def list_not_found_attempts(self, year: int, limit: int) -> List[CrawlAttempt]: ...

    @abstractmethod
    def delete_attempts(self, ids: Sequence[int]) -> int: ...

    @abstractmethod
    def detach_document(self, document_id: int) -> int:
        """Null the document link of every attempt pointing at the document."""

    @abstractmethod
    def max_success_index(self, year: int) -> int: ...

    # documents
    @abstractmethod
    def find_document(self, url: str) -> Optional[Document]: ...

    @abstractmethod
    def upsert_document(self, url: str, year: int, index: int, text: str, byte_size: int,
                        ocr_provider: Optional[str], ocr_confidence: Optional[float] = None) -> Document: ...

    @abstractmethod
    def delete_document(self, document_id: int) -> None: ...

    @abstractmethod
    def total_document_bytes(self) -> int: ...

    @abstractmethod
    def count_documents(self) -> int: ...

    @abstractmethod
    def list_deletion_candidates(self, after: Optional[Tuple[datetime, int]], limit: int) -> List[Document]:
        """Oldest non user-edited documents strictly after the (created_at, id) cursor."""

    # not-found ranges
    @abstractmethod
    def list_ranges(self, year: int) -> List[NotFoundRange]: ...

    @abstractmethod
    def find_ranges_touching(self, year: int, start_index: int, end_index: int) -> List[NotFoundRange]:
        """Ranges overlapping or adjacent to [start_index, end_index]."""

    @abstractmethod
    def create_range(self, year: int, start_index: int, end_index: int) -> NotFoundRange: ...

    @abstractmethod
    def update_range(self, range_id: int, start_index: int, end_index: int) -> NotFoundRange: ...

    @abstractmethod
    def delete_range(self, range_id: int) -> None: ...

    # filter rules
    @abstractmethod
    def create_filter_rule(self, rule_type: str, field: str, mode: str, pattern: str,
                           active: bool = True) -> FilterRule: ...

    @abstractmethod
    def list_filter_rules(self, rule_type: Optional[str] = None, active_only: bool = True) -> List[FilterRule]: ...

    @abstractmethod
    def delete_filter_rule(self, rule_id: int) -> None: ...

    # run logs
    @abstractmethod
    def create_run_log(self, name: str, started_at: datetime, duration_sec: float,
                       stats: Optional[Dict[str, int]] = None,
                       extra: Optional[Dict[str, Any]] = None) -> RunLog: ...

    @abstractmethod
    def list_run_logs(self, name: Optional[str] = None, since: Optional[datetime] = None,
                      limit: int = 20, offset: int = 0) -> List[RunLog]: ...

    @abstractmethod
    def aggregate_run_logs(self, name: Optional[str] = None,
                           since: Optional[datetime] = None) -> RunLogAggregate: ...

    @abstractmethod
    def prune_run_logs(self, name: str, keep: int = 5) -> int: ...

    # job configuration
    @abstractmethod
    def get_job_config(self, name: str) -> Tuple[bool, Dict[str, Any]]:
        """Stored (enabled, params); (True, {}) when nothing is stored yet."""

    @abstractmethod
    def upsert_job_params(self, name: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge changes into the stored params and return the result."""

    @abstractmethod
    def set_job_enabled(self, name: str, enabled: bool) -> None: ...


class SQLRepository(Repository):
    """Repository backed by any SQLAlchemy-supported database"""

    def __init__(self, database_url: str):
        self.logger = logging.getLogger(__name__)

        engine_kwargs: Dict[str, Any] = {}
        self._shared_connection = False
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                engine_kwargs["poolclass"] = StaticPool
                self._shared_connection = True

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        # Writers are serialized; every upsert is a read followed by a write.
        # With a single shared connection readers are serialized too.
        self._write_lock = threading.RLock()

        Base.metadata.create_all(bind=self.engine)
        self.logger.debug(f"Repository ready on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def _session(self, write: bool = False):
        locked = write or self._shared_connection
        if locked:
            self._write_lock.acquire()
        session = self.SessionLocal()
        try:
            yield session
            if write:
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            if locked:
                self._write_lock.release()

    def close(self) -> None:
        self.engine.dispose()

    # crawl attempts

    def find_attempt(self, url: str) -> Optional[CrawlAttempt]:
        with self._session() as session:
            row = session.scalars(select(CrawlAttemptRow).where(CrawlAttemptRow.url == url)).first()
            return _to_attempt(row) if row else None

    def mark_attempt_pending(self, url: str, year: int, index: int) -> CrawlAttempt:
        now = utcnow()
        with self._session(write=True) as session:
            row = session.scalars(select(CrawlAttemptRow).where(CrawlAttemptRow.url == url)).first()
            if row is None:
                row = CrawlAttemptRow(url=url, year=year, index=index, attempts=1,
                                      status=STATUS_PENDING, last_visited_at=now)
                session.add(row)
            else:
                row.attempts = (row.attempts or 0) + 1
                row.status = STATUS_PENDING
                row.last_visited_at = now
                row.year = year
                row.index = index
            session.flush()
            return _to_attempt(row)

    def update_attempt(self, url: str, status: str, http_status: Optional[int] = None,
                       last_error: Optional[str] = None, document_id: Optional[int] = None) -> None:
        values: Dict[str, Any] = {"status": status, "http_status": http_status}
        if last_error is not None:
            values["last_error"] = last_error
        if document_id is not None:
            values["document_id"] = document_id
        with self._session(write=True) as session:
            result = session.execute(update(CrawlAttemptRow).where(CrawlAttemptRow.url == url).values(**values))
            if result.rowcount == 0:
                raise LookupError(f"No crawl attempt recorded for {url}")

    def list_not_found_attempts(self, year: int, limit: int) -> List[CrawlAttempt]:
        with self._session() as session:
            rows = session.scalars(
                select(CrawlAttemptRow)
                .where(CrawlAttemptRow.status == STATUS_NOT_FOUND,
                       CrawlAttemptRow.year == year,
                       CrawlAttemptRow.index.is_not(None))
                .order_by(CrawlAttemptRow.index.asc())
                .limit(limit)
            ).all()
            return [_to_attempt(r) for r in rows]

    def delete_attempts(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        with self._session(write=True) as session:
            result = session.execute(delete(CrawlAttemptRow).where(CrawlAttemptRow.id.in_(list(ids))))
            return result.rowcount or 0

    def detach_document(self, document_id: int) -> int:
        with self._session(write=True) as session:
            result = session.execute(
                update(CrawlAttemptRow)
                .where(CrawlAttemptRow.document_id == document_id)
                .values(document_id=None)
            )
            return result.rowcount or 0

    def max_success_index(self, year: int) -> int:
        with self._session() as session:
            doc_max = session.scalar(select(func.max(DocumentRow.index)).where(DocumentRow.year == year))
            attempt_max = session.scalar(
                select(func.max(CrawlAttemptRow.index))
                .where(CrawlAttemptRow.year == year, CrawlAttemptRow.status == STATUS_SUCCESS)
            )
            return max(doc_max or 0, attempt_max or 0)

    # documents

    def find_document(self, url: str) -> Optional[Document]:
        with self._session() as session:
            row = session.scalars(select(DocumentRow).where(DocumentRow.url == url)).first()
            return _to_document(row) if row else None

    def upsert_document(self, url: str, year: int, index: int, text: str, byte_size: int,
                        ocr_provider: Optional[str], ocr_confidence: Optional[float] = None) -> Document:
        with self._session(write=True) as session:
            row = session.scalars(select(DocumentRow).where(DocumentRow.url == url)).first()
            if row is None:
                row = DocumentRow(url=url, created_at=utcnow())
                session.add(row)
            row.year = year
            row.index = index
            row.text = text
            row.byte_size = byte_size
            row.ocr_provider = ocr_provider
            row.ocr_confidence = ocr_confidence
            session.flush()
            return _to_document(row)

    def delete_document(self, document_id: int) -> None:
        with self._session(write=True) as session:
            session.execute(delete(DocumentRow).where(DocumentRow.id == document_id))

    def total_document_bytes(self) -> int:
        with self._session() as session:
            return int(session.scalar(select(func.coalesce(func.sum(DocumentRow.byte_size), 0))) or 0)

    def count_documents(self) -> int:
        with self._session() as session:
            return int(session.scalar(select(func.count(DocumentRow.id))) or 0)

    def list_deletion_candidates(self, after: Optional[Tuple[datetime, int]], limit: int) -> List[Document]:
        query = select(DocumentRow).where(DocumentRow.user_edited.is_(False))
        if after is not None:
            created_at, doc_id = after
            query = query.where(or_(
                DocumentRow.created_at > created_at,
                and_(DocumentRow.created_at == created_at, DocumentRow.id > doc_id),
            ))
        query = query.order_by(DocumentRow.created_at.asc(), DocumentRow.id.asc()).limit(limit)
        with self._session() as session:
            return [_to_document(r) for r in session.scalars(query).all()]

    def set_document_fields(self, document_id: int, **values: Any) -> None:
        """Edit title/tag/category/user_edited/created_at of a stored document"""
        allowed = {"title", "tag", "category", "user_edited", "created_at", "text"}
        unknown = set(values) - allowed
        if unknown:
            raise ValueError(f"Cannot set document fields: {', '.join(sorted(unknown))}")
        with self._session(write=True) as session:
            session.execute(update(DocumentRow).where(DocumentRow.id == document_id).values(**values))

    # not-found ranges

    def list_ranges(self, year: int) -> List[NotFoundRange]:
        with self._session() as session:
            rows = session.scalars(
                select(NotFoundRangeRow)
                .where(NotFoundRangeRow.year == year)
                .order_by(NotFoundRangeRow.start_index.asc())
            ).all()
            return [_to_range(r) for r in rows]

    def find_ranges_touching(self, year: int, start_index: int, end_index: int) -> List[NotFoundRange]:
        with self._session() as session:
            rows = session.scalars(
                select(NotFoundRangeRow)
                .where(NotFoundRangeRow.year == year,
                       NotFoundRangeRow.start_index <= end_index + 1,
                       NotFoundRangeRow.end_index >= start_index - 1)
                .order_by(NotFoundRangeRow.start_index.asc())
            ).all()
            return [_to_range(r) for r in rows]

    def create_range(self, year: int, start_index: int, end_index: int) -> NotFoundRange:
        with self._session(write=True) as session:
            row = NotFoundRangeRow(year=year, start_index=start_index, end_index=end_index,
                                   count=end_index - start_index + 1)
            session.add(row)
            session.flush()
            return _to_range(row)

    def update_range(self, range_id: int, start_index: int, end_index: int) -> NotFoundRange:
        with self._session(write=True) as session:
            row = session.get(NotFoundRangeRow, range_id)
            if row is None:
                raise LookupError(f"Not-found range {range_id} does not exist")
            row.start_index = start_index
            row.end_index = end_index
            row.count = end_index - start_index + 1
            session.flush()
            return _to_range(row)

    def delete_range(self, range_id: int) -> None:
        with self._session(write=True) as session:
            session.execute(delete(NotFoundRangeRow).where(NotFoundRangeRow.id == range_id))

    # filter rules

    def create_filter_rule(self, rule_type: str, field: str, mode: str, pattern: str,
                           active: bool = True) -> FilterRule:
        with self._session(write=True) as session:
            row = FilterRuleRow(rule_type=rule_type, field=field, mode=mode, pattern=pattern,
                                active=active, created_at=utcnow())
            session.add(row)
            session.flush()
            return _to_rule(row)

    def list_filter_rules(self, rule_type: Optional[str] = None, active_only: bool = True) -> List[FilterRule]:
        query = select(FilterRuleRow)
        if rule_type:
            query = query.where(FilterRuleRow.rule_type == rule_type)
        if active_only:
            query = query.where(FilterRuleRow.active.is_(True))
        with self._session() as session:
            return [_to_rule(r) for r in session.scalars(query.order_by(FilterRuleRow.id)).all()]

    def delete_filter_rule(self, rule_id: int) -> None:
        with self._session(write=True) as session:
            session.execute(delete(FilterRuleRow).where(FilterRuleRow.id == rule_id))

    # run logs

    def create_run_log(self, name: str, started_at: datetime, duration_sec: float,
                       stats: Optional[Dict[str, int]] = None,
                       extra: Optional[Dict[str, Any]] = None) -> RunLog:
        stats = stats or {}
        with self._session(write=True) as session:
            row = RunLogRow(
                name=name, started_at=started_at, duration_sec=duration_sec,
                attempted=stats.get("attempted", 0), downloaded=stats.get("downloaded", 0),
                not_found=stats.get("not_found", 0), errors=stats.get("errors", 0),
                skipped=stats.get("skipped", 0), extra=extra,
            )
            session.add(row)
            session.flush()
            return _to_run_log(row)

    @staticmethod
    def _run_log_filters(name: Optional[str], since: Optional[datetime]):
        conditions = []
        if name:
            conditions.append(RunLogRow.name == name)
        if since is not None:
            conditions.append(RunLogRow.started_at >= since)
        return conditions

    def list_run_logs(self, name: Optional[str] = None, since: Optional[datetime] = None,
                      limit: int = 20, offset: int = 0) -> List[RunLog]:
        query = (
            select(RunLogRow)
            .where(*self._run_log_filters(name, since))
            .order_by(RunLogRow.started_at.desc(), RunLogRow.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with self._session() as session:
            return [_to_run_log(r) for r in session.scalars(query).all()]

    def aggregate_run_logs(self, name: Optional[str] = None,
                           since: Optional[datetime] = None) -> RunLogAggregate:
        query = select(
            func.count(RunLogRow.id),
            func.avg(RunLogRow.duration_sec),
            func.avg(RunLogRow.errors),
            func.coalesce(func.sum(RunLogRow.attempted), 0),
            func.coalesce(func.sum(RunLogRow.downloaded), 0),
            func.coalesce(func.sum(RunLogRow.not_found), 0),
            func.coalesce(func.sum(RunLogRow.errors), 0),
            func.coalesce(func.sum(RunLogRow.skipped), 0),
        ).where(*self._run_log_filters(name, since))
        with self._session() as session:
            count, avg_duration, avg_errors, attempted, downloaded, not_found, errors, skipped = \
                session.execute(query).one()
        return RunLogAggregate(
            count=int(count or 0),
            avg_duration_sec=float(avg_duration or 0.0),
            avg_errors=float(avg_errors or 0.0),
            attempted=int(attempted), downloaded=int(downloaded),
            not_found=int(not_found), errors=int(errors), skipped=int(skipped),
        )

    def prune_run_logs(self, name: str, keep: int = 5) -> int:
        if keep <= 0:
            keep = 5
        with self._session(write=True) as session:
            older = session.scalars(
                select(RunLogRow.id)
                .where(RunLogRow.name == name)
                .order_by(RunLogRow.started_at.desc(), RunLogRow.id.desc())
                .offset(keep)
                .limit(1000)
            ).all()
            if not older:
                return 0
            result = session.execute(delete(RunLogRow).where(RunLogRow.id.in_(older)))
            return result.rowcount or 0

    # job configuration

    def get_job_config(self, name: str) -> Tuple[bool, Dict[str, Any]]:
        with self._session() as session:
            row = session.get(JobConfigRow, name)
            if row is None:
                return True, {}
            enabled = True if row.enabled is None else bool(row.enabled)
            params = row.params if isinstance(row.params, dict) else {}
            return enabled, dict(params)

    def upsert_job_params(self, name: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._session(write=True) as session:
            row = session.get(JobConfigRow, name)
            if row is None:
                row = JobConfigRow(name=name, enabled=True, params=dict(changes))
                session.add(row)
            else:
                merged = dict(row.params or {})
                merged.update(changes)
                row.params = merged
            session.flush()
            return dict(row.params)

    def set_job_enabled(self, name: str, enabled: bool) -> None:
        with self._session(write=True) as session:
            row = session.get(JobConfigRow, name)
            if row is None:
                session.add(JobConfigRow(name=name, enabled=enabled, params={}))
            else:
                row.enabled = enabled
