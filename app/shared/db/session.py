"""
Database engine and session factories.

The process-wide engine is built lazily from settings. Tests and one-off
tools call `build_engine` directly and own the result.
"""

import time
from threading import Lock
from typing import Any, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import Settings, get_settings

# Mappers must be configured before the first session is opened.
import app.models  # noqa: F401, E402

logger = structlog.get_logger()

SLOW_QUERY_THRESHOLD_SECONDS = 0.2

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_lock = Lock()


def normalize_db_url(raw_url: Optional[str]) -> str:
    """Map sync driver URLs onto their async drivers."""
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def _engine_options(url: str, settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.DB_ECHO}
    if url.startswith("sqlite"):
        # One shared connection keeps an in-memory database alive.
        if ":memory:" in url:
            options["poolclass"] = StaticPool
        return options
    options.update(
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )
    return options


def _mark_query_start(conn, _cursor, _statement, _parameters, _context, _many) -> None:
    conn.info.setdefault("query_started", []).append(time.perf_counter())


def _log_slow_query(conn, _cursor, statement, _parameters, _context, _many) -> None:
    elapsed = time.perf_counter() - conn.info["query_started"].pop()
    if elapsed > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(elapsed, 3),
            statement=statement[:200],
        )


def build_engine(url: str, settings: Optional[Settings] = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = normalize_db_url(url)
    if not url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")
    engine = create_async_engine(url, **_engine_options(url, settings))
    event.listen(engine.sync_engine, "before_cursor_execute", _mark_query_start)
    event.listen(engine.sync_engine, "after_cursor_execute", _log_slow_query)
    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine, _session_maker
    if _engine is None:
        with _lock:
            if _engine is None:
                settings = get_settings()
                url = settings.DATABASE_URL
                if not url and settings.TESTING:
                    url = "sqlite+aiosqlite:///:memory:"
                _engine = build_engine(url or "", settings)
                _session_maker = build_session_maker(_engine)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_maker is not None
    return _session_maker
