"""Inbound federation: messages handed to this provider by a foreign one.

Gates, in order: provider header, per-provider rate limit, envelope/payload
validation, replay guard, signature verification, trust wrapping, recipient
resolution.

Wrapping happens exactly once, here, before the recipient is resolved. The
local delivery path never wraps, so a federated message carries a single
``<external-content>`` marker whether it is delivered or queued.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional, cast

from .address import parse_address
from .content_security import TrustLevel, apply_trust_wrapping
from .directory import AgentDirectory
from .envelope import Envelope, Payload, verify
from .errors import (
    DUPLICATE_MESSAGE,
    INVALID_REQUEST,
    MISSING_HEADER,
    NOT_FOUND,
    RATE_LIMITED,
    AmpError,
    invalid_field,
)
from .ratelimit import FixedWindowRateLimiter
from .replay import ReplayGuard
from .routing import RouteResult, RoutingEngine

logger = logging.getLogger(__name__)

PROVIDER_HEADER = "X-AMP-Provider"


class FederationGateway:
    def __init__(
        self,
        *,
        directory: AgentDirectory,
        routing: RoutingEngine,
        replay_guard: ReplayGuard,
        rate_limiter: FixedWindowRateLimiter,
    ) -> None:
        self.directory = directory
        self.routing = routing
        self.replay_guard = replay_guard
        self.rate_limiter = rate_limiter

    async def receive(self, provider: Optional[str], body: Any) -> RouteResult:
        provider_id = (provider or "").strip().lower()
        if not provider_id:
            raise AmpError(MISSING_HEADER, f"{PROVIDER_HEADER} header is required")

        decision = await self.rate_limiter.check(provider_id)
        if not decision.allowed:
            logger.warning("federation.rate_limited", extra={"provider": provider_id})
            raise AmpError(
                RATE_LIMITED,
                f"Rate limit exceeded for provider '{provider_id}'",
                retry_after=decision.retry_after,
            )

        if not isinstance(body, Mapping):
            raise AmpError(INVALID_REQUEST, "Request body must be a JSON object")
        raw_payload = body.get("payload")
        envelope = Envelope.from_dict(body.get("envelope"))
        payload = Payload.from_dict(raw_payload)
        sender_public_key = body.get("sender_public_key") or ""
        if not isinstance(sender_public_key, str):
            raise invalid_field("sender_public_key", "sender_public_key must be a string")
        recipient_address = parse_address(envelope.to)
        if recipient_address is None:
            raise invalid_field("envelope.to", f"Invalid address format: {envelope.to!r}")

        # The id is consumed here, before resolution, so a retried not_found is also a duplicate
        if not await self.replay_guard.admit(envelope.id):
            logger.info("federation.duplicate", extra={"message_id": envelope.id, "provider": provider_id})
            raise AmpError(DUPLICATE_MESSAGE, f"Message {envelope.id} was already received")

        trust = TrustLevel.UNTRUSTED
        if envelope.signature and sender_public_key:
            # Payload.from_dict already rejected non-mapping payloads
            if verify(envelope, cast(Mapping[str, Any], raw_payload), envelope.signature, sender_public_key):
                trust = TrustLevel.EXTERNAL
            else:
                logger.warning(
                    "federation.signature_invalid",
                    extra={"message_id": envelope.id, "provider": provider_id, "sender": envelope.from_},
                )

        wrapped = apply_trust_wrapping(payload, envelope.from_, trust)

        recipient = await self.directory.resolve(recipient_address.name)
        if recipient is None:
            raise AmpError(NOT_FOUND, f"Recipient '{recipient_address.name}' not found")

        result = await self.routing.deliver_or_queue(
            recipient, envelope.to_dict(), wrapped.to_dict(), sender_public_key
        )
        logger.info(
            "federation.accepted",
            extra={
                "message_id": envelope.id,
                "provider": provider_id,
                "trust": trust.value,
                "status": result.status,
            },
        )
        return result
