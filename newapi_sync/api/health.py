"""Health check endpoint."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from newapi_sync.database.database import get_db
from newapi_sync.services.config_loader import load_config
from newapi_sync.services.exceptions import ConfigError
from newapi_sync.services.newapi_client import NewApiClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    target: str
    target_balance: Optional[float] = None
    message: Optional[str] = None


@router.get("/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint.

    Checks database connectivity, the sync configuration and the target
    instance credentials.
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "target": "reachable"
    }

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["message"] = str(e)
        return HealthResponse(**health_status)

    try:
        config = load_config()
    except ConfigError as e:
        health_status["status"] = "unhealthy"
        health_status["target"] = "unconfigured"
        health_status["message"] = str(e)
        return HealthResponse(**health_status)

    target = config.target
    async with NewApiClient(target.base_url, target.system_access_token, target.user_id, name="target") as client:
        health = await client.health_check()

    if not health.ok:
        health_status["status"] = "unhealthy"
        health_status["target"] = "unreachable"
        health_status["message"] = health.error
    else:
        health_status["target_balance"] = health.balance
    return HealthResponse(**health_status)
