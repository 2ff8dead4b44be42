"""Engine, sessions and schema for the relay's single SQLite database.

Every durable store (agents, inboxes, relay queue, replay guard,
propagation records, peer hosts) shares this database. SQLite runs in WAL
mode so reads never wait on the writer; transient lock errors are retried
by ``retry_on_db_lock`` and each store serializes its own writes.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Any]

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None

_LOCK_MARKERS = ("database is locked", "database is busy", "locked")
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=30000",
    "PRAGMA temp_store=MEMORY",
)


def _transient_kind(exc: Exception) -> Optional[str]:
    """Name the retryable condition behind ``exc``, or None when it should propagate."""
    if isinstance(exc, SATimeoutError):
        return "pool_exhausted"
    text = str(exc).lower()
    if "pool" in text and ("timeout" in text or "exhausted" in text):
        return "pool_exhausted"
    if any(marker in text for marker in _LOCK_MARKERS):
        return "db_locked"
    return None


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (2**attempt), max_delay)
    return max(0.01, delay * random.uniform(0.75, 1.25))


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 4.0,
) -> Callable[..., Any]:
    """Retry an async store operation on SQLite lock or pool-timeout errors.

    Sleeps ``base_delay * 2**attempt`` (capped at ``max_delay``, jittered by
    25%) between attempts. Other errors, and the last failed attempt, propagate.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as exc:
                    kind = _transient_kind(exc)
                    if kind is None or attempt >= max_retries:
                        raise
                    delay = _backoff(attempt, base_delay, max_delay)
                    attempt += 1
                    logger.warning(
                        f"db.{kind}",
                        extra={
                            "function": func.__qualname__,
                            "attempt": attempt,
                            "max_retries": max_retries,
                            "delay_seconds": round(delay, 3),
                            "error": str(exc)[:200],
                        },
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def _sqlite_connect_args(url: str) -> dict[str, Any]:
    parsed = make_url(url)
    database = parsed.database
    if database and database != ":memory:":
        # SQLite cannot create missing parent directories itself
        Path(database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    return {"timeout": 30.0, "check_same_thread": False}


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    is_sqlite = settings.url.lower().startswith("sqlite")
    options: dict[str, Any] = {
        "echo": settings.echo,
        "pool_pre_ping": True,
        "connect_args": _sqlite_connect_args(settings.url) if is_sqlite else {},
    }
    for name in ("pool_size", "max_overflow", "pool_timeout"):
        value = getattr(settings, name)
        if value is not None:
            options[name] = value
    engine = create_async_engine(settings.url, **options)

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def _apply_pragmas(dbapi_conn: Any, _record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                for pragma in _SQLITE_PRAGMAS:
                    cursor.execute(pragma)
            finally:
                cursor.close()

    return engine


def init_engine(settings: Settings | None = None) -> None:
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    _engine = _build_engine((settings or get_settings()).database)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session that is always closed, even when the caller is cancelled."""
    session = get_session_factory()()
    try:
        yield session
    finally:
        await asyncio.shield(session.close())


@retry_on_db_lock(max_retries=7, base_delay=0.1, max_delay=8.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create missing tables. Cheap after the first call in a process."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        from . import models  # noqa: F401  (registers table metadata)

        init_engine(settings)
        async with get_engine().begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        _schema_ready = True


def _forget_engine() -> AsyncEngine | None:
    global _engine, _session_factory, _schema_ready, _schema_lock
    engine = _engine
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    return engine


async def dispose_engine() -> None:
    """Release pooled connections from inside a running loop (shutdown path)."""
    engine = _forget_engine()
    if engine is not None:
        await engine.dispose()


def reset_database_state() -> None:
    """Drop the global engine from synchronous code (CLI exit, test teardown)."""
    engine = _forget_engine()
    if engine is not None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            try:
                asyncio.run(engine.dispose())
            except Exception:
                with suppress(Exception):
                    engine.sync_engine.dispose()
        else:
            # Cannot block inside a running loop; release the sync pool instead
            engine.sync_engine.dispose()
    clear_settings_cache()
