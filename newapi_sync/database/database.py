"""Database configuration and session management."""

import os
import logging
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import declarative_base, sessionmaker

from newapi_sync.config import settings

logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    prefix = "sqlite:///"
    if not database_url.startswith(prefix) or ":memory:" in database_url:
        return
    directory = os.path.dirname(database_url[len(prefix):])
    if directory:
        os.makedirs(directory, exist_ok=True)


_ensure_sqlite_directory(settings.database_url)

# Create SQLAlchemy engine
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base for models
Base = declarative_base()


def get_db():
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables.
    
    Creates all tables defined in the models if they don't exist.
    This function is idempotent and safe to call multiple times.
    """
    # Import all models to ensure they are registered with Base
    from newapi_sync.models import SyncRecord  # noqa: F401
    
    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    
    if not existing_tables:
        logger.info("No existing tables found. Creating all tables...")
    else:
        logger.debug(f"Found existing tables: {existing_tables}")
    
    Base.metadata.create_all(bind=engine)

