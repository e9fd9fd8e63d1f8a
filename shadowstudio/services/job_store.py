"""Render job store.

Holds one record per render job and enforces the job state machine::

    pending -> processing -> completed | failed | cancelled
    pending -> cancelled

Updates to a job that already reached a terminal status are ignored (logged,
not raised) so a late progress callback cannot resurrect a cancelled job.
Every read-modify-write runs under a lock. Each applied update that touches
progress, stage or status also appends an entry to the job's progress log.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from shadowstudio.exceptions import (
    InvalidStatusTransitionError,
    JobNotFoundError,
    JobStillActiveError,
)
from shadowstudio.models.database import get_sync_db
from shadowstudio.models.render_job import RenderJob as RenderJobRow
from shadowstudio.models.render_progress_log import RenderProgressLog as ProgressLogRow

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Render job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})

LEGAL_TRANSITIONS: frozenset[tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.PENDING, JobStatus.PENDING),
        (JobStatus.PENDING, JobStatus.PROCESSING),
        (JobStatus.PENDING, JobStatus.CANCELLED),
        (JobStatus.PROCESSING, JobStatus.PROCESSING),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.CANCELLED),
    }
)

PATCHABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "current_stage",
        "output_path",
        "output_size",
        "output_duration_s",
        "actual_time_s",
        "error_code",
        "error_message",
    }
)
_OUTPUT_FIELDS = ("output_path", "output_size", "output_duration_s")
_ERROR_FIELDS = ("error_code", "error_message")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class JobRecord:
    """Snapshot of one render job."""

    id: str
    clip_id: str
    template_id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    kind: str = "clip"
    clip_ids: list[str] = field(default_factory=list)
    template: Optional[dict[str, Any]] = None
    current_stage: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    output_duration_s: Optional[float] = None
    estimated_time_s: Optional[float] = None
    actual_time_s: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "kind": self.kind,
            "clip_id": self.clip_id,
            "clip_ids": list(self.clip_ids),
            "template_id": self.template_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_stage": self.current_stage,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "output_path": self.output_path,
            "output_size": self.output_size,
            "output_duration_s": self.output_duration_s,
            "estimated_time_s": self.estimated_time_s,
            "actual_time_s": self.actual_time_s,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


@dataclass
class ProgressLogEntry:
    """One step of a job's progress history."""

    job_id: str
    stage: Optional[str]
    progress: int
    status: JobStatus
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "stage": self.stage,
            "progress": self.progress,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }


_LOGGED_FIELDS = frozenset({"status", "progress", "current_stage"})


def _log_entry(record: JobRecord, patch: dict[str, Any]) -> Optional[ProgressLogEntry]:
    if not _LOGGED_FIELDS & set(patch):
        return None
    return ProgressLogEntry(
        job_id=record.id,
        stage=record.current_stage,
        progress=record.progress,
        status=record.status,
        timestamp=record.updated_at,
    )


def apply_patch(record: JobRecord, patch: dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Validate ``patch`` against the state machine and apply it in place.

    Returns False (and leaves the record untouched) when the job is already
    terminal.

    Raises:
        InvalidStatusTransitionError: transition not allowed
        ValueError: unknown field, or output/error fields on the wrong status
    """
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be patched: {sorted(unknown)}")

    if record.is_terminal:
        logger.info(
            f"[JOB] ignored update for terminal job {record.id} "
            f"({record.status.value}): {sorted(patch)}"
        )
        return False

    now = now or utcnow()
    current = record.status
    requested = JobStatus(patch.get("status", current))
    if (current, requested) not in LEGAL_TRANSITIONS:
        raise InvalidStatusTransitionError(record.id, current.value, requested.value)

    if requested != JobStatus.COMPLETED and any(patch.get(f) is not None for f in _OUTPUT_FIELDS):
        raise ValueError("Output fields may only be set when completing a job")
    if requested != JobStatus.FAILED and any(patch.get(f) is not None for f in _ERROR_FIELDS):
        raise ValueError("Error fields may only be set when failing a job")

    if "progress" in patch and patch["progress"] is not None:
        # Never regress
        progress = max(0, min(100, int(patch["progress"])))
        record.progress = max(record.progress, progress)

    for name in ("current_stage", "actual_time_s", *_OUTPUT_FIELDS, *_ERROR_FIELDS):
        if name in patch:
            setattr(record, name, patch[name])

    if requested != current:
        logger.info(f"[JOB] {record.id}: {current.value} -> {requested.value}")
    record.status = requested
    if requested == JobStatus.PROCESSING and record.started_at is None:
        record.started_at = now
    if requested == JobStatus.COMPLETED:
        record.progress = 100
    if requested.is_terminal:
        record.completed_at = now
        if record.actual_time_s is None and record.started_at is not None:
            record.actual_time_s = round((now - record.started_at).total_seconds(), 3)
    record.updated_at = now
    return True


def compute_stats(records: list[JobRecord]) -> dict[str, Any]:
    """Counts per status and the average actual time of completed jobs."""
    counts = {status.value: 0 for status in JobStatus}
    times: list[float] = []
    for record in records:
        counts[record.status.value] += 1
        if record.status == JobStatus.COMPLETED and record.actual_time_s is not None:
            times.append(record.actual_time_s)
    return {
        "total": len(records),
        "by_status": counts,
        "active": counts[JobStatus.PENDING.value] + counts[JobStatus.PROCESSING.value],
        "average_render_time_s": round(sum(times) / len(times), 3) if times else None,
    }


class JobStore(ABC):
    """Storage contract for render jobs."""

    @abstractmethod
    def create(
        self,
        clip_ids: list[str],
        template_id: str,
        *,
        template: Optional[dict[str, Any]] = None,
        estimated_time_s: Optional[float] = None,
        kind: str = "clip",
        job_id: Optional[str] = None,
    ) -> JobRecord:
        """Create a pending job and return it. ``job_id`` defaults to a new UUID."""

    @abstractmethod
    def get(self, job_id: str) -> JobRecord:
        """Return the job or raise ``JobNotFoundError``."""

    @abstractmethod
    def update(self, job_id: str, **patch: Any) -> JobRecord:
        """Apply a partial patch and return the resulting record."""

    @abstractmethod
    def list_active(self) -> list[JobRecord]:
        """Pending and processing jobs, oldest first."""

    @abstractmethod
    def list_recent(self, limit: int = 50) -> list[JobRecord]:
        """Newest jobs first."""

    @abstractmethod
    def list_by_clip(self, clip_id: str) -> list[JobRecord]:
        """Jobs that rendered ``clip_id``, newest first."""

    @abstractmethod
    def cleanup(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Delete terminal jobs created before ``now - retention``; return the count."""

    @abstractmethod
    def delete(self, job_id: str) -> None:
        """Delete a terminal job."""

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Aggregate counts, see ``compute_stats``."""

    @abstractmethod
    def get_progress_logs(self, job_id: str) -> list[ProgressLogEntry]:
        """Progress history of a job, oldest first."""


def _new_record(
    clip_ids: list[str],
    template_id: str,
    template: Optional[dict[str, Any]],
    estimated_time_s: Optional[float],
    kind: str,
    job_id: Optional[str],
) -> JobRecord:
    if not clip_ids:
        raise ValueError("A job needs at least one clip id")
    now = utcnow()
    return JobRecord(
        id=job_id or str(uuid.uuid4()),
        clip_id=clip_ids[0],
        clip_ids=list(clip_ids),
        template_id=template_id,
        template=template,
        estimated_time_s=estimated_time_s,
        kind=kind,
        created_at=now,
        updated_at=now,
    )


# ============================================================================
# In-memory backend
# ============================================================================


class InMemoryJobStore(JobStore):
    """Thread-safe process-local job store."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._logs: dict[str, list[ProgressLogEntry]] = {}
        self._lock = threading.Lock()

    def create(
        self,
        clip_ids: list[str],
        template_id: str,
        *,
        template: Optional[dict[str, Any]] = None,
        estimated_time_s: Optional[float] = None,
        kind: str = "clip",
        job_id: Optional[str] = None,
    ) -> JobRecord:
        record = _new_record(clip_ids, template_id, template, estimated_time_s, kind, job_id)
        with self._lock:
            self._jobs[record.id] = record
            self._logs[record.id] = [_log_entry(record, {"status": record.status})]
        logger.info(f"[JOB] Created {kind} job {record.id} for clips {clip_ids}")
        return replace(record)

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            return replace(record)

    def update(self, job_id: str, **patch: Any) -> JobRecord:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            working = replace(record)
            if apply_patch(working, patch):
                self._jobs[job_id] = working
                record = working
                entry = _log_entry(working, patch)
                if entry is not None:
                    self._logs[job_id].append(entry)
            return replace(record)

    def list_active(self) -> list[JobRecord]:
        with self._lock:
            active = [r for r in self._jobs.values() if r.status in ACTIVE_STATUSES]
        return [replace(r) for r in sorted(active, key=lambda r: r.created_at)]

    def list_recent(self, limit: int = 50) -> list[JobRecord]:
        with self._lock:
            records = sorted(self._jobs.values(), key=lambda r: r.created_at, reverse=True)
        return [replace(r) for r in records[:limit]]

    def list_by_clip(self, clip_id: str) -> list[JobRecord]:
        with self._lock:
            records = [r for r in self._jobs.values() if clip_id in r.clip_ids]
        return [replace(r) for r in sorted(records, key=lambda r: r.created_at, reverse=True)]

    def cleanup(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - retention
        with self._lock:
            expired = [
                job_id
                for job_id, r in self._jobs.items()
                if r.is_terminal and r.created_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
                self._logs.pop(job_id, None)
        logger.info(f"[JOB] Retention cleanup removed {len(expired)} jobs")
        return len(expired)

    def delete(self, job_id: str) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            if not record.is_terminal:
                raise JobStillActiveError(job_id)
            del self._jobs[job_id]
            self._logs.pop(job_id, None)
        logger.info(f"[JOB] Deleted job {job_id}")

    def stats(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._jobs.values())
        return compute_stats(records)

    def get_progress_logs(self, job_id: str) -> list[ProgressLogEntry]:
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)
            return [replace(entry) for entry in self._logs.get(job_id, [])]


# ============================================================================
# SQLAlchemy backend
# ============================================================================


_COPIED_COLUMNS = (
    "id",
    "kind",
    "clip_id",
    "template_id",
    "progress",
    "current_stage",
    "output_path",
    "output_size",
    "output_duration_s",
    "estimated_time_s",
    "actual_time_s",
    "error_code",
    "error_message",
)
_TIMESTAMP_COLUMNS = ("created_at", "updated_at", "started_at", "completed_at")


def _row_to_record(row: RenderJobRow) -> JobRecord:
    values: dict[str, Any] = {name: getattr(row, name) for name in _COPIED_COLUMNS}
    values.update({name: _aware(getattr(row, name)) for name in _TIMESTAMP_COLUMNS})
    return JobRecord(
        status=JobStatus(row.status),
        clip_ids=json.loads(row.clip_ids or "[]"),
        template=json.loads(row.template_json) if row.template_json else None,
        **values,
    )


def _record_to_row(record: JobRecord, row: RenderJobRow) -> None:
    for name in (*_COPIED_COLUMNS, *_TIMESTAMP_COLUMNS):
        setattr(row, name, getattr(record, name))
    row.status = record.status.value
    row.clip_ids = json.dumps(record.clip_ids)
    row.template_json = json.dumps(record.template) if record.template is not None else None


def _entry_to_row(entry: ProgressLogEntry) -> ProgressLogRow:
    return ProgressLogRow(
        job_id=entry.job_id,
        stage=entry.stage,
        progress=entry.progress,
        status=entry.status.value,
        timestamp=entry.timestamp,
    )


def _row_to_entry(row: ProgressLogRow) -> ProgressLogEntry:
    return ProgressLogEntry(
        job_id=row.job_id,
        stage=row.stage,
        progress=row.progress,
        status=JobStatus(row.status),
        timestamp=_aware(row.timestamp),
    )


class SqlAlchemyJobStore(JobStore):
    """Job store persisted through SQLAlchemy (SQLite or PostgreSQL)."""

    def __init__(self, session_maker: Optional[sessionmaker[Session]] = None) -> None:
        self._session_maker = session_maker
        self._lock = threading.Lock()

    def _session(self):
        return get_sync_db(self._session_maker)

    def create(
        self,
        clip_ids: list[str],
        template_id: str,
        *,
        template: Optional[dict[str, Any]] = None,
        estimated_time_s: Optional[float] = None,
        kind: str = "clip",
        job_id: Optional[str] = None,
    ) -> JobRecord:
        record = _new_record(clip_ids, template_id, template, estimated_time_s, kind, job_id)
        row = RenderJobRow()
        _record_to_row(record, row)
        with self._lock, self._session() as db:
            db.add(row)
            db.flush()
            db.add(_entry_to_row(_log_entry(record, {"status": record.status})))
        logger.info(f"[JOB] Created {kind} job {record.id} for clips {clip_ids}")
        return record

    def get(self, job_id: str) -> JobRecord:
        with self._session() as db:
            row = db.get(RenderJobRow, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return _row_to_record(row)

    def update(self, job_id: str, **patch: Any) -> JobRecord:
        with self._lock, self._session() as db:
            row = db.get(RenderJobRow, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            record = _row_to_record(row)
            if apply_patch(record, patch):
                _record_to_row(record, row)
                entry = _log_entry(record, patch)
                if entry is not None:
                    db.add(_entry_to_row(entry))
            return record

    def list_active(self) -> list[JobRecord]:
        with self._session() as db:
            rows = db.scalars(
                select(RenderJobRow)
                .where(RenderJobRow.status.in_([s.value for s in ACTIVE_STATUSES]))
                .order_by(RenderJobRow.created_at.asc())
            ).all()
            return [_row_to_record(row) for row in rows]

    def list_recent(self, limit: int = 50) -> list[JobRecord]:
        with self._session() as db:
            rows = db.scalars(
                select(RenderJobRow).order_by(RenderJobRow.created_at.desc()).limit(limit)
            ).all()
            return [_row_to_record(row) for row in rows]

    def list_by_clip(self, clip_id: str) -> list[JobRecord]:
        with self._session() as db:
            # Prefilter on the JSON text, then match exactly
            rows = db.scalars(
                select(RenderJobRow)
                .where(
                    or_(
                        RenderJobRow.clip_id == clip_id,
                        RenderJobRow.clip_ids.contains(json.dumps(clip_id)),
                    )
                )
                .order_by(RenderJobRow.created_at.desc())
            ).all()
            records = [_row_to_record(row) for row in rows]
        return [r for r in records if clip_id in r.clip_ids]

    def cleanup(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - retention
        expired = (
            select(RenderJobRow.id)
            .where(
                RenderJobRow.status.in_([s.value for s in TERMINAL_STATUSES]),
                RenderJobRow.created_at < cutoff,
            )
            .scalar_subquery()
        )
        with self._lock, self._session() as db:
            db.execute(delete(ProgressLogRow).where(ProgressLogRow.job_id.in_(expired)))
            result = db.execute(delete(RenderJobRow).where(RenderJobRow.id.in_(expired)))
            removed = result.rowcount or 0
        logger.info(f"[JOB] Retention cleanup removed {removed} jobs")
        return removed

    def delete(self, job_id: str) -> None:
        with self._lock, self._session() as db:
            row = db.get(RenderJobRow, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            if not JobStatus(row.status).is_terminal:
                raise JobStillActiveError(job_id)
            db.execute(delete(ProgressLogRow).where(ProgressLogRow.job_id == job_id))
            db.delete(row)
        logger.info(f"[JOB] Deleted job {job_id}")

    def stats(self) -> dict[str, Any]:
        with self._session() as db:
            counts = dict(
                db.execute(
                    select(RenderJobRow.status, func.count()).group_by(RenderJobRow.status)
                ).all()
            )
            average = db.scalar(
                select(func.avg(RenderJobRow.actual_time_s)).where(
                    RenderJobRow.status == JobStatus.COMPLETED.value
                )
            )
        by_status = {status.value: int(counts.get(status.value, 0)) for status in JobStatus}
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active": by_status[JobStatus.PENDING.value] + by_status[JobStatus.PROCESSING.value],
            "average_render_time_s": round(float(average), 3) if average is not None else None,
        }

    def get_progress_logs(self, job_id: str) -> list[ProgressLogEntry]:
        with self._session() as db:
            if db.get(RenderJobRow, job_id) is None:
                raise JobNotFoundError(job_id)
            rows = db.scalars(
                select(ProgressLogRow)
                .where(ProgressLogRow.job_id == job_id)
                .order_by(ProgressLogRow.timestamp.asc(), ProgressLogRow.id.asc())
            ).all()
            return [_row_to_entry(row) for row in rows]
