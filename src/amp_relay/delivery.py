"""Local delivery channel and post-delivery notifications."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .config import NotificationSettings
from .db import get_session, retry_on_db_lock
from .directory import AgentRecord
from .models import InboxMessage
from .utils import iso_utc, utcnow_naive

logger = logging.getLogger(__name__)


class LocalDelivery(Protocol):
    async def deliver(
        self,
        agent: AgentRecord,
        envelope: Mapping[str, Any],
        payload: Mapping[str, Any],
        sender_public_key: str = "",
    ) -> datetime: ...


class InboxDelivery:
    """Persist delivered messages into the recipient's inbox table."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] = get_session,
        clock: Callable[[], datetime] = utcnow_naive,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    @retry_on_db_lock()
    async def deliver(
        self,
        agent: AgentRecord,
        envelope: Mapping[str, Any],
        payload: Mapping[str, Any],
        sender_public_key: str = "",
    ) -> datetime:
        now = self._clock()
        security = payload.get("security")
        trust = security.get("trust") if isinstance(security, Mapping) else None
        row = InboxMessage(
            agent_id=agent.id,
            message_id=str(envelope.get("id")),
            sender=str(envelope.get("from") or ""),
            subject=str(envelope.get("subject") or ""),
            priority=str(envelope.get("priority") or "normal"),
            trust=trust,
            envelope=dict(envelope),
            payload=dict(payload),
            sender_public_key=sender_public_key or "",
            delivered_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Already in this inbox; redelivery is a no-op.
                await session.rollback()
        return now

    async def messages_for(self, agent_id: str, limit: int = 50) -> list[InboxMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(InboxMessage)
                .where(InboxMessage.agent_id == agent_id)
                .order_by(InboxMessage.delivered_at.desc(), InboxMessage.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


NotificationSink = Callable[[AgentRecord, dict[str, Any]], Awaitable[bool]]


class SignalFileSink:
    """Write ``{signals_dir}/agents/{agent_id}.signal`` so watchers notice new mail.

    Signals for the same agent within ``debounce_ms`` are skipped.
    """

    def __init__(self, settings: NotificationSettings, *, clock: Callable[[], float] = time.time) -> None:
        self.signals_dir = Path(settings.signals_dir).expanduser()
        self.debounce_ms = settings.debounce_ms
        self._clock = clock
        self._last_signal: dict[str, float] = {}

    def signal_path(self, agent_id: str) -> Path:
        return self.signals_dir / "agents" / f"{agent_id}.signal"

    async def __call__(self, agent: AgentRecord, metadata: dict[str, Any]) -> bool:
        now_ms = self._clock() * 1000
        if now_ms - self._last_signal.get(agent.id, 0) < self.debounce_ms:
            return False
        self._last_signal[agent.id] = now_ms
        signal_path = self.signal_path(agent.id)
        signal_data = {
            "timestamp": iso_utc(utcnow_naive()),
            "agent": agent.name,
            "agent_id": agent.id,
            "message": metadata,
        }

        def _write_signal() -> None:
            signal_path.parent.mkdir(parents=True, exist_ok=True)
            signal_path.write_text(json.dumps(signal_data, indent=2), encoding="utf-8")

        await asyncio.to_thread(_write_signal)
        return True


class Notifier:
    """Emit, don't await: notification failures never reach the delivering caller."""

    def __init__(self, sink: Optional[NotificationSink] = None) -> None:
        self.sink = sink
        self._tasks: set[asyncio.Task[Any]] = set()

    def emit(self, agent: AgentRecord, envelope: Mapping[str, Any]) -> None:
        if self.sink is None:
            return
        metadata = {
            "id": envelope.get("id"),
            "from": envelope.get("from"),
            "subject": envelope.get("subject"),
            "priority": envelope.get("priority", "normal"),
        }
        task = asyncio.create_task(self.sink(agent, metadata))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("notify.failed", extra={"error": f"{type(exc).__name__}: {exc}"})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
