"""Sync record database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, CheckConstraint
from newapi_sync.database.database import Base


class SyncRecord(Base):
    """Model for tracking sync and reset run history."""

    __tablename__ = "sync_records"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String, nullable=False)  # in_progress, success, failed
    mode = Column(String, nullable=False, default="apply")  # apply, dry-run, reset
    providers = Column(Text, nullable=True)  # comma-separated provider names
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    changes_summary = Column(Text, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint("status IN ('in_progress', 'success', 'failed')", name='ck_sync_status'),
        CheckConstraint("mode IN ('apply', 'dry-run', 'reset')", name='ck_sync_mode'),
    )
