"""Job execution log and alert bookkeeping."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID

from ..database.base import Base


class JobRunStatus(enum.StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class JobRun(Base):
    """Append-only: created at job start, updated once with the terminal status."""

    __tablename__ = "job_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_name = Column(String(100), nullable=False)
    status = Column(
        SQLEnum(JobRunStatus, name="job_run_status", values_callable=lambda e: [s.value for s in e]),
        nullable=False,
        default=JobRunStatus.RUNNING,
    )
    started_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    items_processed = Column(Integer, nullable=True)
    items_failed = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("idx_job_runs_name_started", "job_name", "started_at"),
        Index("idx_job_runs_status", "status"),
    )


class JobAlertState(Base):
    """Last time a "job not running" alert went out, per job."""

    __tablename__ = "job_alert_states"

    job_name = Column(String(100), primary_key=True)
    last_alerted_at = Column(DateTime(timezone=True), nullable=True)
