"""Async database engine, session management and the evidence store dependency."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from app.config import get_settings
from app.models.sql_store import SqlEvidenceStore
from app.models.store import EvidenceStore

# Engine and store are created on first use, not at import time.
_engine = None
_async_session = None
_store = None


def _get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=settings.debug,
        )
    return _engine


def _get_session_maker():
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session


def get_store() -> EvidenceStore:
    """FastAPI dependency — the process-wide evidence store."""
    global _store
    if _store is None:
        _store = SqlEvidenceStore(_get_session_maker())
    return _store


async def dispose_engine() -> None:
    global _engine, _async_session, _store
    if _engine is not None:
        await _engine.dispose()
    _engine = _async_session = _store = None
