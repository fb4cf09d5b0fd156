from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Index, Text
from typing import Optional
import enum
import json
import uuid

from mediajobs.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============== Job Enums ==============

class JobStatus(str, enum.Enum):
    """Job lifecycle status."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.QUEUED, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, enum.Enum):
    """Kinds of work, each routed to its own pipeline and queue partition."""
    MEDIA_TRANSFORM = "media_transform"
    FRAME_SWAP = "frame_swap"
    IDENTITY_GENERATION = "identity_generation"
    TRAINING = "training"
    IMAGE_GENERATION = "image_generation"
    VARIANT = "variant"

    @property
    def partition(self) -> str:
        return self.value.replace("_", "-")


# ============== Job Models ==============

class Job(Base):
    """A unit of asynchronous work tracked from creation to a terminal status."""

    __tablename__ = "jobs"

    # JSON-encoded Text columns
    JSON_FIELDS = ("input_payload", "output_payload", "progress_log")

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(40), nullable=False)
    reference_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)

    input_payload = Column(Text, nullable=True)
    output_payload = Column(Text, nullable=True)
    progress_log = Column(Text, nullable=True)

    external_request_id = Column(String(255), nullable=True)
    external_status = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    cost_cents = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_job_status", "status"),
        Index("idx_job_type_created", "type", "created_at"),
        Index("idx_job_reference", "reference_id"),
    )

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, type={self.type}, status={self.status}, progress={self.progress})>"

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def get_input_payload(self) -> dict:
        """Parse input payload JSON."""
        return json.loads(self.input_payload) if self.input_payload else {}

    def get_output_payload(self) -> Optional[dict]:
        """Parse output payload JSON."""
        return json.loads(self.output_payload) if self.output_payload else None

    def get_progress_log(self) -> list:
        """Parse progress log JSON."""
        return json.loads(self.progress_log) if self.progress_log else []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "reference_id": self.reference_id,
            "status": self.status,
            "progress": self.progress,
            "input_payload": self.get_input_payload(),
            "output_payload": self.get_output_payload(),
            "external_request_id": self.external_request_id,
            "external_status": self.external_status,
            "error_message": self.error_message,
            "cost_cents": self.cost_cents,
            "progress_log": self.get_progress_log(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class CostLedgerEntry(Base):
    """One row per completed job that incurred engine spend."""

    __tablename__ = "cost_ledger"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(36), nullable=False, index=True)
    job_type = Column(String(40), nullable=False)
    cost_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<CostLedgerEntry(job_id={self.job_id}, cost_cents={self.cost_cents})>"
