"""Lease lock model: one row per job name, existence means held."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from ..database.base import Base


class LeaseLock(Base):
    __tablename__ = "job_leases"

    job_name = Column(String(100), primary_key=True)
    lease_token = Column(String(64), nullable=False, unique=True)
    acquired_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<LeaseLock job={self.job_name} token={self.lease_token} expires={self.expires_at}>"
