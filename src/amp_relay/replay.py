"""Replay guard for inbound federated message ids.

Accepted ids are stored durably, so a restart does not reopen the replay
window. Entries older than the window are swept lazily: the first check after
``sweep_interval`` has elapsed deletes them.

Storage failures FAIL OPEN. When the guard cannot read or write its table the
message is admitted and a warning is logged; losing replay protection for a
moment is preferred over refusing delivery.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import get_session, retry_on_db_lock
from .models import ReplaySeen
from .utils import SweepSchedule, utcnow_naive

logger = logging.getLogger(__name__)


class ReplayGuard:
    def __init__(
        self,
        *,
        window_seconds: int = 86400,
        sweep_interval_seconds: int = 3600,
        session_factory: Callable[[], Any] = get_session,
        clock: Callable[[], datetime] = utcnow_naive,
        schedule: Optional[SweepSchedule] = None,
    ) -> None:
        self.window = timedelta(seconds=window_seconds)
        self.schedule = schedule or SweepSchedule(interval=timedelta(seconds=sweep_interval_seconds))
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _maybe_sweep(self, now: datetime) -> None:
        if self.schedule.claim(now):
            await self._sweep(now)

    async def _sweep(self, now: datetime) -> int:
        cutoff = now - self.window
        async with self._session_factory() as session:
            result = await session.execute(delete(ReplaySeen).where(ReplaySeen.first_seen_at < cutoff))
            await session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("replay.swept", extra={"removed": removed})
        return removed

    async def sweep(self) -> int:
        """Remove every record older than the replay window, regardless of schedule."""
        now = self._clock()
        async with self._lock:
            self.schedule.last_swept_at = now
            return await self._sweep(now)

    async def _is_seen(self, message_id: str, now: datetime) -> bool:
        cutoff = now - self.window
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReplaySeen.message_id).where(
                    ReplaySeen.message_id == message_id,
                    ReplaySeen.first_seen_at >= cutoff,
                )
            )
            return result.first() is not None

    @retry_on_db_lock()
    async def _insert(self, message_id: str, now: datetime) -> None:
        async with self._session_factory() as session:
            existing = await session.get(ReplaySeen, message_id)
            if existing is not None:
                # Stale row outside the window that the sweep has not reached yet
                existing.first_seen_at = now
            else:
                session.add(ReplaySeen(message_id=message_id, first_seen_at=now))
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent record of the same id; already recorded.
                await session.rollback()

    async def seen(self, message_id: str) -> bool:
        """True if ``message_id`` was accepted within the window. Read failures report False (fail open)."""
        now = self._clock()
        try:
            await self._maybe_sweep(now)
            return await self._is_seen(message_id, now)
        except SQLAlchemyError as exc:
            # Fail open: an unreadable guard must not block delivery.
            logger.warning("replay.check_failed", extra={"message_id": message_id, "error": str(exc)[:200]})
            return False

    async def record(self, message_id: str) -> None:
        """Record ``message_id`` as accepted. Idempotent; write failures are logged, never raised."""
        now = self._clock()
        try:
            await self._insert(message_id, now)
        except SQLAlchemyError as exc:
            # Fail open: the message still goes through without replay protection.
            logger.warning("replay.record_failed", extra={"message_id": message_id, "error": str(exc)[:200]})

    async def admit(self, message_id: str) -> bool:
        """Atomically check-and-record. False means ``message_id`` is a replay."""
        async with self._lock:
            if await self.seen(message_id):
                return False
            await self.record(message_id)
            return True
