"""Database models package."""

from newapi_sync.models.sync_record import SyncRecord

__all__ = [
    "SyncRecord",
]
