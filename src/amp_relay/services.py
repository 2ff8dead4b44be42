"""Process-scoped service container.

Built once at startup (``build_services``), stored on ``app.state.services``
and handed to request handlers and CLI commands. Stores, the rate limiter and
the notifier live here rather than as module globals so tests can build an
isolated set.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import Settings, get_settings
from .db import get_session
from .delivery import InboxDelivery, LocalDelivery, Notifier, SignalFileSink
from .directory import AgentDirectory
from .federation import FederationGateway
from .peers import HealthChecker, HostIdentity, PeerDirectory, PeerSyncClient, PropagationStore, check_hosts_health
from .ratelimit import FixedWindowRateLimiter
from .relay import RelayQueue
from .replay import ReplayGuard
from .routing import RoutingEngine


@dataclass(slots=True)
class AmpServices:
    settings: Settings
    directory: AgentDirectory
    relay: RelayQueue
    replay_guard: ReplayGuard
    rate_limiter: FixedWindowRateLimiter
    delivery: LocalDelivery
    notifier: Notifier
    routing: RoutingEngine
    federation: FederationGateway
    propagation: PropagationStore
    peers: PeerDirectory
    peer_sync: PeerSyncClient
    session_factory: Callable[[], Any] = get_session


def build_services(
    settings: Optional[Settings] = None,
    *,
    session_factory: Callable[[], Any] = get_session,
    delivery: Optional[LocalDelivery] = None,
    notifier: Optional[Notifier] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    health_checker: Optional[HealthChecker] = None,
    peer_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AmpServices:
    settings = settings or get_settings()
    amp = settings.amp
    host = settings.host

    directory = AgentDirectory(
        provider=amp.provider_name,
        organization=amp.organization,
        storage_root=settings.storage.root,
        session_factory=session_factory,
    )
    relay = RelayQueue(
        ttl_seconds=amp.relay_ttl_seconds,
        default_limit=amp.relay_default_limit,
        max_limit=amp.relay_max_limit,
        sweep_interval_seconds=amp.relay_sweep_interval_seconds,
        session_factory=session_factory,
    )
    replay_guard = ReplayGuard(
        window_seconds=amp.replay_window_seconds,
        sweep_interval_seconds=amp.replay_sweep_interval_seconds,
        session_factory=session_factory,
    )
    if notifier is None:
        sink = SignalFileSink(settings.notifications) if settings.notifications.enabled else None
        notifier = Notifier(sink)
    delivery = delivery or InboxDelivery(session_factory=session_factory)
    routing = RoutingEngine(
        provider=amp.provider_name,
        local_suffixes=amp.local_suffixes,
        directory=directory,
        relay=relay,
        delivery=delivery,
        notifier=notifier,
        delivery_timeout_seconds=amp.delivery_timeout_seconds,
    )
    rate_limiter = rate_limiter or FixedWindowRateLimiter.from_settings(settings)
    federation = FederationGateway(
        directory=directory,
        routing=routing,
        replay_guard=replay_guard,
        rate_limiter=rate_limiter,
    )
    propagation = PropagationStore(
        ttl_seconds=host.propagation_ttl_seconds,
        sweep_interval_seconds=host.propagation_sweep_interval_seconds,
        session_factory=session_factory,
    )
    if health_checker is None:
        health_checker = functools.partial(
            check_hosts_health, timeout=host.health_check_timeout_seconds, transport=peer_transport
        )
    peers = PeerDirectory(
        self_identity=HostIdentity(
            id=host.id,
            name=host.name,
            url=host.url,
            description=host.description,
            aliases=tuple(host.aliases),
        ),
        propagation=propagation,
        max_depth=host.max_propagation_depth,
        health_checker=health_checker,
        session_factory=session_factory,
    )
    peer_sync = PeerSyncClient(
        peers,
        api_path=settings.http.path,
        timeout=host.request_timeout_seconds,
        health_timeout=host.health_check_timeout_seconds,
        transport=peer_transport,
    )
    return AmpServices(
        settings=settings,
        directory=directory,
        relay=relay,
        replay_guard=replay_guard,
        rate_limiter=rate_limiter,
        delivery=delivery,
        notifier=notifier,
        routing=routing,
        federation=federation,
        propagation=propagation,
        peers=peers,
        peer_sync=peer_sync,
        session_factory=session_factory,
    )
