"""Outbound routing: local delivery, relay queue, or rejection.

Every accepted message is either delivered or queued. A local delivery that
fails or times out falls back to the relay queue instead of surfacing an error
to the sender.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .address import is_local_provider, parse_address
from .delivery import LocalDelivery, Notifier
from .directory import AgentDirectory, AgentRecord
from .envelope import Payload, create_envelope, sign
from .errors import FORBIDDEN, AmpError, invalid_field, missing_field
from .relay import RelayQueue
from .utils import iso_utc

logger = logging.getLogger(__name__)

STATUS_DELIVERED = "delivered"
STATUS_QUEUED = "queued"
METHOD_LOCAL = "local"
METHOD_RELAY = "relay"


@dataclass(slots=True, frozen=True)
class RouteResult:
    id: str
    status: str
    method: str
    delivered_at: Optional[str] = None
    queued_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "status": self.status, "method": self.method}
        if self.delivered_at:
            data["delivered_at"] = self.delivered_at
        if self.queued_at:
            data["queued_at"] = self.queued_at
        return data


class RoutingEngine:
    def __init__(
        self,
        *,
        provider: str,
        directory: AgentDirectory,
        relay: RelayQueue,
        delivery: LocalDelivery,
        notifier: Notifier,
        local_suffixes: Iterable[str] = (".local",),
        delivery_timeout_seconds: float = 5.0,
    ) -> None:
        self.provider = provider
        self.local_suffixes = tuple(local_suffixes)
        self.directory = directory
        self.relay = relay
        self.delivery = delivery
        self.notifier = notifier
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self._late: set[asyncio.Future[Any]] = set()

    def _track(self, future: asyncio.Future[Any]) -> None:
        self._late.add(future)
        future.add_done_callback(self._late.discard)

    def _settle_late_delivery(
        self, agent: AgentRecord, envelope: Mapping[str, Any], task: asyncio.Future[Any]
    ) -> None:
        message_id = str(envelope.get("id"))
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "route.late_delivery_failed",
                extra={"recipient": agent.id, "message_id": message_id, "error": str(exc)[:200]},
            )
            return
        # The inbox copy landed after the relay fallback; withdraw the queued copy
        logger.info("route.late_delivery", extra={"recipient": agent.id, "message_id": message_id})
        self._track(asyncio.ensure_future(self._withdraw_queued(agent, envelope)))

    async def _withdraw_queued(self, agent: AgentRecord, envelope: Mapping[str, Any]) -> None:
        message_id = str(envelope.get("id"))
        try:
            await self.relay.acknowledge(agent.id, message_id)
        except Exception as exc:
            logger.warning(
                "route.withdraw_failed",
                extra={"recipient": agent.id, "message_id": message_id, "error": str(exc)[:200]},
            )
            return
        self.notifier.emit(agent, envelope)

    @property
    def pending_late_deliveries(self) -> int:
        return len(self._late)

    async def drain(self) -> None:
        """Wait for deliveries that outlived their timeout (shutdown and tests)."""
        while self._late:
            await asyncio.gather(*list(self._late), return_exceptions=True)

    async def _enqueue(
        self, recipient_key: str, envelope: Mapping[str, Any], payload: Mapping[str, Any], sender_public_key: str
    ) -> RouteResult:
        entry = await self.relay.enqueue(recipient_key, envelope, payload, sender_public_key)
        return RouteResult(
            id=str(envelope["id"]),
            status=STATUS_QUEUED,
            method=METHOD_RELAY,
            queued_at=iso_utc(entry.queued_at),
        )

    async def deliver_or_queue(
        self,
        agent: AgentRecord,
        envelope: Mapping[str, Any],
        payload: Mapping[str, Any],
        sender_public_key: str = "",
    ) -> RouteResult:
        """Deliver to a resolved recipient if it has an active channel, else queue under its id."""
        if not agent.online:
            return await self._enqueue(agent.id, envelope, payload, sender_public_key)
        # Shielded: a timeout must not cancel a delivery whose commit may already have landed
        task = asyncio.ensure_future(self.delivery.deliver(agent, envelope, payload, sender_public_key))
        try:
            delivered_at = await asyncio.wait_for(asyncio.shield(task), timeout=self.delivery_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("route.delivery_timeout", extra={"recipient": agent.id, "message_id": envelope.get("id")})
            result = await self._enqueue(agent.id, envelope, payload, sender_public_key)
            self._track(task)
            task.add_done_callback(functools.partial(self._settle_late_delivery, agent, envelope))
            return result
        except Exception as exc:
            # Delivery failures are absorbed into the relay queue, never lost
            logger.warning(
                "route.delivery_failed",
                extra={"recipient": agent.id, "message_id": envelope.get("id"), "error": str(exc)[:200]},
            )
            return await self._enqueue(agent.id, envelope, payload, sender_public_key)
        self.notifier.emit(agent, envelope)
        return RouteResult(
            id=str(envelope["id"]),
            status=STATUS_DELIVERED,
            method=METHOD_LOCAL,
            delivered_at=iso_utc(delivered_at),
        )

    async def route(
        self,
        sender: AgentRecord,
        to_address: Any,
        subject: Any,
        payload: Any,
        priority: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> RouteResult:
        if not isinstance(to_address, str) or not to_address.strip():
            raise missing_field("to")
        if not isinstance(subject, str) or not subject.strip():
            raise missing_field("subject")
        parsed_payload = Payload.from_dict(payload)
        address = parse_address(to_address)
        if address is None:
            raise invalid_field("to", f"Invalid address format: {to_address!r} (expected name@organization.provider)")
        if not is_local_provider(address, self.provider, self.local_suffixes):
            raise AmpError(FORBIDDEN, f"Federation not supported for provider '{address.provider}'")

        envelope = create_envelope(sender.address, address.full, subject, priority, in_reply_to)
        payload_dict = parsed_payload.to_dict()
        seed = await self.directory.load_signing_key(sender.id)
        if seed is not None:
            envelope = envelope.with_signature(sign(envelope, payload_dict, seed))
        envelope_dict = envelope.to_dict()

        recipient = await self.directory.resolve(address.name)
        if recipient is None:
            # Unknown yet: queue under the bare name until the agent registers
            result = await self._enqueue(address.name, envelope_dict, payload_dict, sender.public_key)
        else:
            result = await self.deliver_or_queue(recipient, envelope_dict, payload_dict, sender.public_key)
        logger.info(
            "route.completed",
            extra={"message_id": result.id, "status": result.status, "method": result.method, "sender": sender.id},
        )
        return result
