"""Durable relay queue for messages awaiting pickup.

Entries are keyed by recipient: the agent id once the recipient is known,
otherwise the bare agent name used in the address. Readers try the id first
and fall back to the name (see :meth:`RelayQueue.pending_for`), which covers
messages queued before the recipient registered. Keys are lower-cased, so
names match the way agent resolution matches them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from .db import get_session, retry_on_db_lock
from .errors import INVALID_REQUEST, AmpError
from .models import RelayEntry
from .utils import SweepSchedule, utcnow_naive

logger = logging.getLogger(__name__)

MAX_BATCH_ACK = 100


def normalize_key(key: str) -> str:
    """Recipient keys compare case-insensitively, like agent name resolution."""
    return key.strip().lower()


def _unique_keys(keys: Sequence[Optional[str]]) -> list[str]:
    ordered: list[str] = []
    for key in keys:
        key = normalize_key(key or "")
        if key and key not in ordered:
            ordered.append(key)
    return ordered


class RelayQueue:
    def __init__(
        self,
        *,
        ttl_seconds: int = 7 * 86400,
        default_limit: int = 10,
        max_limit: int = 100,
        sweep_interval_seconds: int = 3600,
        session_factory: Callable[[], Any] = get_session,
        clock: Callable[[], datetime] = utcnow_naive,
        schedule: Optional[SweepSchedule] = None,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.schedule = schedule or SweepSchedule(interval=timedelta(seconds=sweep_interval_seconds))
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.default_limit
        return min(limit, self.max_limit)

    async def _maybe_expire(self, now: datetime) -> None:
        if self.schedule.claim(now):
            await self._expire(now)

    async def _expire(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(RelayEntry).where(RelayEntry.expires_at <= now))
            await session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("relay.expired", extra={"removed": removed})
        return removed

    @retry_on_db_lock()
    async def expire_all(self) -> int:
        """Delete every entry past its expiry, regardless of the sweep schedule."""
        now = self._clock()
        async with self._lock:
            self.schedule.last_swept_at = now
            return await self._expire(now)

    @retry_on_db_lock()
    async def enqueue(
        self,
        recipient_key: str,
        envelope: Mapping[str, Any],
        payload: Mapping[str, Any],
        sender_public_key: str = "",
    ) -> RelayEntry:
        """Queue a message for ``recipient_key``. Re-enqueueing the same envelope id is a no-op."""
        message_id = str(envelope.get("id") or "")
        recipient_key = normalize_key(recipient_key or "")
        if not recipient_key or not message_id:
            raise AmpError(INVALID_REQUEST, "recipient and envelope id are required to queue a message")
        now = self._clock()
        async with self._lock:
            await self._maybe_expire(now)
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RelayEntry).where(
                        RelayEntry.recipient_key == recipient_key,
                        RelayEntry.message_id == message_id,
                    )
                )
                existing = result.scalars().first()
                if existing is not None:
                    return existing
                entry = RelayEntry(
                    recipient_key=recipient_key,
                    message_id=message_id,
                    envelope=dict(envelope),
                    payload=dict(payload),
                    sender_public_key=sender_public_key or "",
                    queued_at=now,
                    expires_at=now + self.ttl,
                )
                session.add(entry)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    result = await session.execute(
                        select(RelayEntry).where(
                            RelayEntry.recipient_key == recipient_key,
                            RelayEntry.message_id == message_id,
                        )
                    )
                    existing = result.scalars().first()
                    if existing is not None:
                        return existing
                    raise
                await session.refresh(entry)
        logger.info("relay.enqueued", extra={"recipient": recipient_key, "message_id": message_id})
        return entry

    @retry_on_db_lock()
    async def pending(self, recipient_key: str, limit: Optional[int] = None) -> list[RelayEntry]:
        """Oldest-first, non-expired entries for ``recipient_key``; each returned entry's attempts is bumped."""
        recipient_key = normalize_key(recipient_key)
        now = self._clock()
        async with self._lock:
            await self._maybe_expire(now)
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RelayEntry)
                    .where(RelayEntry.recipient_key == recipient_key, RelayEntry.expires_at > now)
                    .order_by(RelayEntry.queued_at.asc(), RelayEntry.id.asc())
                    .limit(self._clamp_limit(limit))
                )
                entries = list(result.scalars().all())
                if entries:
                    await session.execute(
                        update(RelayEntry)
                        .where(RelayEntry.id.in_([e.id for e in entries]))
                        .values(attempts=RelayEntry.attempts + 1)
                    )
                    await session.commit()
                    for entry in entries:
                        await session.refresh(entry)
        return entries

    async def count(self, recipient_key: str) -> int:
        recipient_key = normalize_key(recipient_key)
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(RelayEntry.id)).where(
                    RelayEntry.recipient_key == recipient_key,
                    RelayEntry.expires_at > now,
                )
            )
            return int(result.scalar() or 0)

    @retry_on_db_lock()
    async def acknowledge(self, recipient_key: str, message_id: str) -> bool:
        recipient_key = normalize_key(recipient_key)
        async with self._lock:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(RelayEntry).where(
                        RelayEntry.recipient_key == recipient_key,
                        RelayEntry.message_id == message_id,
                    )
                )
                await session.commit()
        acknowledged = bool(result.rowcount)
        if acknowledged:
            logger.info("relay.acknowledged", extra={"recipient": recipient_key, "message_id": message_id})
        return acknowledged

    async def acknowledge_batch(self, recipient_key: str, message_ids: Sequence[str]) -> int:
        if len(message_ids) > MAX_BATCH_ACK:
            raise AmpError(INVALID_REQUEST, f"Maximum {MAX_BATCH_ACK} message ids per batch acknowledgment", field="ids")
        ids = _unique_keys(list(message_ids))
        if not ids:
            return 0
        return await self._delete_many(recipient_key, ids)

    @retry_on_db_lock()
    async def _delete_many(self, recipient_key: str, ids: list[str]) -> int:
        recipient_key = normalize_key(recipient_key)
        async with self._lock:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(RelayEntry).where(
                        RelayEntry.recipient_key == recipient_key,
                        RelayEntry.message_id.in_(ids),
                    )
                )
                await session.commit()
        removed = int(result.rowcount or 0)
        logger.info("relay.acknowledged_batch", extra={"recipient": recipient_key, "count": removed})
        return removed

    # Fallback lookups: stable agent id first, then the human-readable name.

    async def pending_for(
        self, keys: Sequence[Optional[str]], limit: Optional[int] = None
    ) -> tuple[Optional[str], list[RelayEntry]]:
        """Return ``(matched key, entries)`` for the first key in ``keys`` with pending entries."""
        for key in _unique_keys(keys):
            entries = await self.pending(key, limit)
            if entries:
                return key, entries
        return None, []

    async def acknowledge_for(self, keys: Sequence[Optional[str]], message_id: str) -> bool:
        for key in _unique_keys(keys):
            if await self.acknowledge(key, message_id):
                return True
        return False

    async def acknowledge_batch_for(self, keys: Sequence[Optional[str]], message_ids: Sequence[str]) -> int:
        if len(message_ids) > MAX_BATCH_ACK:
            raise AmpError(INVALID_REQUEST, f"Maximum {MAX_BATCH_ACK} message ids per batch acknowledgment", field="ids")
        # Ids may be split between the id queue and the name queue; clear them from every key
        removed = 0
        for key in _unique_keys(keys):
            removed += await self.acknowledge_batch(key, message_ids)
        return removed
