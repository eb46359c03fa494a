"""Sync API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from newapi_sync.database.database import get_db
from newapi_sync.services.config_loader import AppConfig, apply_only_providers, load_config
from newapi_sync.services.exceptions import ConfigError, SyncInProgressError, TargetUnavailableError
from newapi_sync.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRequest(BaseModel):
    """Sync run request."""

    model_config = ConfigDict(populate_by_name=True)

    only: Optional[List[str]] = None
    dry_run: bool = Field(default=False, alias="dryRun")


class ResourceCountsResponse(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0


class SyncResponse(BaseModel):
    """Sync run response."""

    sync_id: Optional[int] = None
    status: str
    mode: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    providers_succeeded: int
    providers_total: int
    channels: ResourceCountsResponse
    models: ResourceCountsResponse
    options_updated: List[str] = []
    changes_summary: Optional[str] = None
    error_message: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Sync status response."""

    sync_id: Optional[int] = None
    status: Optional[str] = None
    mode: Optional[str] = None
    started_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    message: Optional[str] = None
    last_sync: Optional[dict] = None


class SyncHistoryResponse(BaseModel):
    """Sync history response."""

    id: int
    status: str
    mode: str
    providers: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    changes_summary: Optional[str] = None


def get_app_config() -> AppConfig:
    """Load the sync configuration file."""
    try:
        return load_config()
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


def get_sync_service(config: AppConfig = Depends(get_app_config)) -> SyncService:
    """Get sync service instance for the loaded configuration."""
    return SyncService(config)


def _record_to_dict(record) -> dict:
    return {
        "id": record.id,
        "status": record.status,
        "mode": record.mode,
        "providers": record.providers,
        "started_at": record.started_at.isoformat(),
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "changes_summary": record.changes_summary,
        "error_message": record.error_message
    }


@router.post("", response_model=SyncResponse)
async def run_sync(
    request: SyncRequest = SyncRequest(),
    db: Session = Depends(get_db),
    config: AppConfig = Depends(get_app_config)
):
    """Run a sync (or a dry run) for all or the selected providers.

    The run is recorded in the sync history.
    """
    try:
        config = apply_only_providers(config, request.only)
        sync_service = SyncService(config)
        result = await sync_service.run_sync(db, dry_run=request.dry_run)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TargetUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Sync failed: {str(e)}")

    record = sync_service.last_record
    apply = result.apply
    return SyncResponse(
        sync_id=record.id if record else None,
        status="success" if result.success else "failed",
        mode="dry-run" if apply.dry_run else "apply",
        started_at=record.started_at.isoformat() if record else None,
        completed_at=record.completed_at.isoformat() if record and record.completed_at else None,
        providers_succeeded=sum(1 for r in result.provider_reports if r.success),
        providers_total=len(result.provider_reports),
        channels=ResourceCountsResponse(
            created=apply.channels.created,
            updated=apply.channels.updated,
            deleted=apply.channels.deleted,
        ),
        models=ResourceCountsResponse(
            created=apply.models.created,
            updated=apply.models.updated,
            deleted=apply.models.deleted,
        ),
        options_updated=apply.options_updated,
        changes_summary=record.changes_summary if record else None,
        error_message=record.error_message if record else None,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get status of the current run and the last recorded run."""
    try:
        status = sync_service.get_sync_status(db)
        history = sync_service.get_sync_history(db, limit=1)
        last_sync = _record_to_dict(history[0]) if history else None

        if not status:
            return SyncStatusResponse(
                message="No sync operation in progress",
                last_sync=last_sync
            )

        return SyncStatusResponse(
            sync_id=status["sync_id"],
            status=status["status"],
            mode=status["mode"],
            started_at=status["started_at"],
            duration_seconds=status["duration_seconds"],
            last_sync=last_sync
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get sync status: {str(e)}")


@router.get("/history", response_model=List[SyncHistoryResponse])
async def get_sync_history(
    limit: int = 10,
    offset: int = 0,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get history of past runs, most recent first."""
    try:
        history = sync_service.get_sync_history(db, limit, offset)
        return [SyncHistoryResponse(**_record_to_dict(record)) for record in history]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get sync history: {str(e)}")
