"""
Database engine and session management.
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examprep.core.config import Settings
from examprep.models.base import Base

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> Engine:
    url = settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            # one shared connection so every session sees the same in-memory db
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.DATABASE_ECHO, future=True, **kwargs)
    return create_engine(
        url,
        echo=settings.DATABASE_ECHO,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
    )


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet."""
    # register the mapped classes on Base.metadata
    import examprep.models.orm  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database tables ensured on {engine.url.render_as_string(hide_password=True)}")
