"""Database engine, session factory and the FastAPI session dependency.

SQLite is supported for development and tests; it ignores ``SELECT ... FOR
UPDATE``, so the owner row lock taken while creating a contact only
serialises requests on a server database.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .core import get_settings


def engine_options(url: str) -> dict:
    """Keyword arguments for :func:`create_engine` suited to ``url``."""
    if url.startswith("sqlite"):
        # sessions are handed between the event loop and worker threads
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


settings = get_settings()

engine = create_engine(
    settings.DATABASE_URL, future=True, **engine_options(settings.DATABASE_URL)
)
"""SQLAlchemy engine bound to the configured database URL."""

SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, future=True
)
"""Factory for database sessions; one session per request or task run."""

Base = declarative_base()
"""Declarative base class for SQLAlchemy models."""


def get_db():
    """
    Yield a session for one request and close it afterwards.

    Used as a FastAPI dependency; tests override it with a session bound to
    an in-memory database.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
