"""
Database engine and session management for the cohort service.

Models live in cohort_engine.records; this module binds them to the configured
database.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cohort_engine.records import (
    Base,
    CohortMaterializationRecord,
    CohortTemplateRecord,
    FactRecord,
    OfflineFeatureRecord,
    OlapRollupRecord,
    PatientLinkRecord,
)
from cohort_service.config import settings

logger = logging.getLogger(__name__)

__all__ = [
    "Base",
    "CohortMaterializationRecord",
    "CohortTemplateRecord",
    "FactRecord",
    "OfflineFeatureRecord",
    "OlapRollupRecord",
    "PatientLinkRecord",
    "build_engine",
    "get_engine",
    "get_session_factory",
    "get_db",
    "init_schema",
    "drop_schema",
]


# Database engine and session factory
_engine = None
_SessionLocal = None


def build_engine(database_url: str, echo: bool = False):
    """Create an engine suited to the URL (SQLite needs thread sharing)."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=300,
        pool_pre_ping=True,  # Test connection before using (auto-reconnect)
        echo=echo,
    )


def get_engine():
    """Get or create the process-wide database engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine()
        )
    return _SessionLocal


def get_db() -> Session:
    """Get database session (dependency injection)."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)
def init_schema(engine=None):
    """Initialize database schema (create tables if not exist)."""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Cohort schema ready")


def drop_schema(engine=None):
    """Drop all cohort tables (use with caution)."""
    engine = engine or get_engine()
    Base.metadata.drop_all(bind=engine)
