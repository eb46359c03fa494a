"""Main FastAPI application entry point."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newapi_sync import __version__
from newapi_sync.api import health_router, sync_router
from newapi_sync.database.database import init_db

logger = logging.getLogger(__name__)

app = FastAPI(
    title="new-api sync",
    description="Declarative sync of upstream pricing and credentials into a new-api instance",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(sync_router)


@app.on_event("startup")
async def startup_event():
    """Initialize the sync history database on startup."""
    init_db()
    logger.info("Sync history database initialized")


@app.get("/")
async def root():
    return {"message": "new-api sync API", "version": __version__}
