"""SQLAlchemy-backed job record store.

Every status write is a compare-and-set:

    UPDATE jobs SET status = :new, ... WHERE id = :id AND status IN (:allowed)

and the caller learns from the row count whether it won. Two workers, a
reaper and a cancel request can race on the same row and exactly one of
them establishes each status.
"""

import enum
import json
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional
import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from mediajobs.database import SessionLocal
from mediajobs.models import CostLedgerEntry, Job, JobStatus, utcnow

logger = structlog.get_logger()


def _encode(values: dict) -> dict:
    """Serialize JSON columns and enum values for a column update."""
    encoded = {}
    for key, value in values.items():
        if key in Job.JSON_FIELDS and value is not None:
            value = json.dumps(value, default=str)
        elif isinstance(value, enum.Enum):
            value = value.value
        encoded[key] = value
    return encoded


def _status_values(statuses: Iterable) -> List[str]:
    return [s.value if isinstance(s, enum.Enum) else s for s in statuses]


class SqlJobStore:
    """
    Job persistence over a SQLAlchemy session factory.

    Returned Job objects are detached snapshots; re-read to observe changes.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _detach(self, session: Session, job: Optional[Job]) -> Optional[Job]:
        if job is not None:
            session.expunge(job)
        return job

    def insert(
        self,
        job_type: str,
        input_payload: dict,
        reference_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
    ) -> Job:
        """Insert a new job row and return it."""
        session = self._session_factory()
        try:
            job = Job(
                type=job_type.value if isinstance(job_type, enum.Enum) else job_type,
                reference_id=reference_id,
                status=status.value,
                progress=0,
                input_payload=json.dumps(input_payload, default=str),
                cost_cents=0,
                created_at=utcnow(),
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            return self._detach(session, job)
        finally:
            session.close()

    def get(self, job_id: str) -> Optional[Job]:
        session = self._session_factory()
        try:
            return self._detach(session, session.get(Job, job_id))
        finally:
            session.close()

    def update(self, job_id: str, **values: Any) -> Optional[Job]:
        """Unconditional column update. Returns the updated job, or None if missing."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(Job).where(Job.id == job_id).values(updated_at=utcnow(), **_encode(values))
            )
            session.commit()
            if result.rowcount == 0:
                return None
            return self._detach(session, session.get(Job, job_id))
        finally:
            session.close()

    def transition(
        self,
        job_id: str,
        from_statuses: Iterable,
        cost_entry: Optional[CostLedgerEntry] = None,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set update guarded by the current status.

        Args:
            job_id: Job to update
            from_statuses: Statuses the row must currently have
            cost_entry: Ledger row committed in the same transaction on success
            **values: Columns to set

        Returns:
            True if this call changed the row
        """
        session = self._session_factory()
        try:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(_status_values(from_statuses)))
                .values(updated_at=utcnow(), **_encode(values))
            )
            won = result.rowcount > 0
            if won and cost_entry is not None:
                session.add(cost_entry)
            session.commit()
            return won
        finally:
            session.close()

    def raise_progress(self, job_id: str, percent: int) -> bool:
        """Set progress only upward and only while the job is processing."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.progress < percent,
                )
                .values(progress=percent, updated_at=utcnow())
            )
            session.commit()
            return result.rowcount > 0
        finally:
            session.close()

    def list_by_status(
        self,
        statuses: Iterable,
        started_before: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        never_started: bool = False,
    ) -> List[Job]:
        """List jobs in the given statuses, optionally filtered by age."""
        session = self._session_factory()
        try:
            query = session.query(Job).filter(Job.status.in_(_status_values(statuses)))
            if started_before is not None:
                query = query.filter(Job.started_at.isnot(None), Job.started_at < started_before)
            if never_started:
                query = query.filter(Job.started_at.is_(None))
            if created_before is not None:
                query = query.filter(Job.created_at < created_before)
            jobs = query.order_by(Job.created_at).all()
            for job in jobs:
                session.expunge(job)
            return jobs
        finally:
            session.close()

    def list_jobs(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Job]:
        """Newest-first listing with optional type and status filters."""
        session = self._session_factory()
        try:
            query = session.query(Job)
            if job_type:
                query = query.filter(Job.type == job_type)
            if status:
                query = query.filter(Job.status == status)
            jobs = query.order_by(Job.created_at.desc()).offset(offset).limit(limit).all()
            for job in jobs:
                session.expunge(job)
            return jobs
        finally:
            session.close()

    def cost_entries(self, job_id: Optional[str] = None) -> List[CostLedgerEntry]:
        session = self._session_factory()
        try:
            query = session.query(CostLedgerEntry)
            if job_id:
                query = query.filter(CostLedgerEntry.job_id == job_id)
            entries = query.order_by(CostLedgerEntry.id).all()
            for entry in entries:
                session.expunge(entry)
            return entries
        finally:
            session.close()
