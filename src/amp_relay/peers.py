"""Peer directory, host registration protocol and mesh sync.

Registration broadcasts are loop-bounded twice over:

- a propagation depth carried in each request, refused past ``max_depth``
- a propagation id processed at most once per host, whatever path it took

A candidate peer counts as already known when any of its id, url or aliases
matches any known peer's id, url or aliases.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import psutil
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from . import __version__
from .db import get_session, retry_on_db_lock
from .models import PeerHost, PropagationRecord
from .utils import SweepSchedule, sanitize_description, utcnow_naive

logger = logging.getLogger(__name__)

_TAILSCALE_NET = ipaddress.ip_network("100.64.0.0/10")
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


def detect_tailscale_ip() -> Optional[str]:
    """Return the first non-loopback IPv4 address inside the Tailscale CGNAT range."""
    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, RuntimeError):
        return None
    for addrs in interfaces.values():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            try:
                ip = ipaddress.ip_address(addr.address)
            except ValueError:
                continue
            if ip in _TAILSCALE_NET:
                return str(ip)
    return None


@dataclass(slots=True, frozen=True)
class HostIdentity:
    id: str
    name: str
    url: str
    description: str = ""
    aliases: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["HostIdentity"]:
        """Parse a wire descriptor; None when id, name or url is missing."""
        if not isinstance(raw, Mapping):
            return None
        values = {key: raw.get(key) for key in ("id", "name", "url")}
        if not all(isinstance(v, str) and v.strip() for v in values.values()):
            return None
        aliases = raw.get("aliases") or []
        if not isinstance(aliases, list):
            aliases = []
        description = raw.get("description")
        return cls(
            id=values["id"].strip(),
            name=values["name"].strip(),
            url=values["url"].strip().rstrip("/"),
            description=description if isinstance(description, str) else "",
            aliases=tuple(str(a).strip() for a in aliases if isinstance(a, str) and a.strip()),
        )

    @classmethod
    def from_peer(cls, peer: PeerHost) -> "HostIdentity":
        return cls(id=peer.id, name=peer.name, url=peer.url, description=peer.description, aliases=tuple(peer.aliases))

    def identifiers(self) -> set[str]:
        return {value.lower() for value in (self.id, self.url, *self.aliases) if value}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "url": self.url, "description": self.description}
        if self.aliases:
            data["aliases"] = list(self.aliases)
        return data


def _peer_identifiers(peer: PeerHost) -> set[str]:
    return {value.lower() for value in (peer.id, peer.url, *(peer.aliases or [])) if value}


class PropagationStore:
    """Propagation ids already processed by this host, kept for ``ttl_seconds``."""

    def __init__(
        self,
        *,
        ttl_seconds: int = 3600,
        sweep_interval_seconds: int = 300,
        session_factory: Callable[[], Any] = get_session,
        clock: Callable[[], datetime] = utcnow_naive,
        schedule: Optional[SweepSchedule] = None,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.schedule = schedule or SweepSchedule(interval=timedelta(seconds=sweep_interval_seconds))
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _sweep(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(PropagationRecord).where(PropagationRecord.seen_at < now - self.ttl)
            )
            await session.commit()
        return int(result.rowcount or 0)

    async def has_processed(self, propagation_id: str) -> bool:
        now = self._clock()
        if self.schedule.claim(now):
            await self._sweep(now)
        async with self._session_factory() as session:
            record = await session.get(PropagationRecord, propagation_id)
        return record is not None and record.seen_at >= now - self.ttl

    @retry_on_db_lock()
    async def mark_processed(self, propagation_id: str) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            record = await session.get(PropagationRecord, propagation_id)
            if record is None:
                session.add(PropagationRecord(propagation_id=propagation_id, seen_at=now))
            else:
                record.seen_at = now
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()

    async def claim(self, propagation_id: str) -> bool:
        """Check-and-mark in one step. False means this id was already processed."""
        async with self._lock:
            if await self.has_processed(propagation_id):
                return False
            await self.mark_processed(propagation_id)
            return True


HealthChecker = Callable[[Sequence[HostIdentity]], Awaitable[dict[str, bool]]]


async def check_hosts_health(
    hosts: Sequence[HostIdentity],
    *,
    timeout: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, bool]:
    """Probe every host's liveness endpoint concurrently; unreachable hosts map to False."""

    async def _probe(client: httpx.AsyncClient, host: HostIdentity) -> tuple[str, bool]:
        try:
            response = await client.get(f"{host.url}/health/liveness")
            return host.id, response.is_success
        except httpx.HTTPError as exc:
            logger.info("peers.health_unreachable", extra={"host": host.id, "error": str(exc)[:200]})
            return host.id, False

    if not hosts:
        return {}
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        results = await asyncio.gather(*(_probe(client, host) for host in hosts))
    return dict(results)


@dataclass(slots=True)
class RegistrationResult:
    status_code: int
    success: bool
    registered: bool
    already_known: bool
    host: dict[str, Any]
    known_hosts: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "registered": self.registered,
            "alreadyKnown": self.already_known,
            "host": self.host,
            "knownHosts": self.known_hosts,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class ExchangeResult:
    status_code: int
    success: bool
    newly_added: list[str] = field(default_factory=list)
    already_known: list[str] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "newlyAdded": self.newly_added,
            "alreadyKnown": self.already_known,
            "unreachable": self.unreachable,
        }
        if self.error:
            data["error"] = self.error
        return data


def _depth(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class PeerDirectory:
    def __init__(
        self,
        *,
        self_identity: HostIdentity,
        propagation: PropagationStore,
        max_depth: int = 3,
        health_checker: Optional[HealthChecker] = None,
        session_factory: Callable[[], Any] = get_session,
        clock: Callable[[], datetime] = utcnow_naive,
    ) -> None:
        self.self_identity = self_identity
        self.propagation = propagation
        self.max_depth = max_depth
        self.health_checker: HealthChecker = health_checker or check_hosts_health
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    # -- identity -----------------------------------------------------------

    def is_self(self, identifier: Optional[str]) -> bool:
        if not identifier:
            return False
        return identifier.lower() in self.self_identity.identifiers()

    def public_url(self) -> str:
        url = self.self_identity.url
        parsed = urlparse(url)
        if parsed.hostname in _LOOPBACK_HOSTS:
            tailscale_ip = detect_tailscale_ip()
            if tailscale_ip:
                port = f":{parsed.port}" if parsed.port else ""
                return f"{parsed.scheme or 'http'}://{tailscale_ip}{port}"
        return url

    def local_identity(self) -> dict[str, Any]:
        identity = self.self_identity
        data = HostIdentity(
            id=identity.id,
            name=identity.name,
            url=self.public_url(),
            description=identity.description,
            aliases=identity.aliases,
        ).to_dict()
        return data

    def identity(self, *, forwarded_host: Optional[str] = None, forwarded_proto: Optional[str] = None) -> dict[str, Any]:
        url = self.public_url()
        tailscale = detect_tailscale_ip() is not None or (urlparse(url).hostname or "").startswith("100.")
        if forwarded_host:
            url = f"{forwarded_proto or 'http'}://{forwarded_host}"
        return {
            "id": self.self_identity.id,
            "name": self.self_identity.name,
            "url": url,
            "description": self.self_identity.description,
            "version": __version__,
            "tailscale": tailscale,
            "isSelf": True,
        }

    # -- storage ------------------------------------------------------------

    async def list_peers(self, *, enabled_only: bool = True) -> list[PeerHost]:
        async with self._session_factory() as session:
            stmt = select(PeerHost).order_by(PeerHost.name)
            if enabled_only:
                stmt = stmt.where(PeerHost.enabled == True)  # noqa: E712
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, peer_id: str) -> Optional[PeerHost]:
        async with self._session_factory() as session:
            return await session.get(PeerHost, peer_id)

    async def find_known(self, candidate: HostIdentity) -> Optional[PeerHost]:
        """Return the known peer sharing any identifier with ``candidate``."""
        wanted = candidate.identifiers()
        for peer in await self.list_peers(enabled_only=False):
            if self.is_self(peer.id):
                continue
            if wanted & _peer_identifiers(peer):
                return peer
        return None

    async def known_identities(self, exclude_id: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            HostIdentity.from_peer(peer).to_dict()
            for peer in await self.list_peers()
            if peer.id != exclude_id and not self.is_self(peer.id)
        ]

    @retry_on_db_lock()
    async def add_peer(self, candidate: HostIdentity, *, sync_source: str, description: str) -> bool:
        """Insert ``candidate``. False if a peer with that id appeared concurrently."""
        async with self._lock:
            async with self._session_factory() as session:
                if await session.get(PeerHost, candidate.id) is not None:
                    return False
                session.add(
                    PeerHost(
                        id=candidate.id,
                        name=candidate.name,
                        url=candidate.url,
                        aliases=list(candidate.aliases),
                        description=description,
                        enabled=True,
                        synced_at=self._clock(),
                        sync_source=sync_source,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
        logger.info("peers.added", extra={"host": candidate.id, "source": sync_source})
        return True

    # -- protocol -----------------------------------------------------------

    async def register_peer(self, body: Any) -> RegistrationResult:
        local = self.local_identity()
        body = body if isinstance(body, Mapping) else {}
        candidate = HostIdentity.from_dict(body.get("host"))
        if candidate is None:
            return RegistrationResult(
                400, False, False, False, local, error="Missing required fields: host.id, host.name, host.url"
            )
        source = body.get("source") if isinstance(body.get("source"), Mapping) else {}
        depth = _depth(source.get("propagationDepth"))
        if depth > self.max_depth:
            logger.info("peers.depth_exceeded", extra={"host": candidate.id, "depth": depth})
            return RegistrationResult(
                200, False, False, False, local, error=f"Max propagation depth ({self.max_depth}) exceeded"
            )
        propagation_id = source.get("propagationId")
        if isinstance(propagation_id, str) and propagation_id:
            if not await self.propagation.claim(propagation_id):
                logger.info("peers.propagation_seen", extra={"propagation_id": propagation_id})
                return RegistrationResult(200, True, False, True, local)

        if self.is_self(candidate.id):
            return RegistrationResult(400, False, False, False, local, error="Cannot register self as peer")

        if await self.find_known(candidate) is not None:
            return RegistrationResult(
                200, True, False, True, local, known_hosts=await self.known_identities(candidate.id)
            )

        initiator = source.get("initiator") if isinstance(source.get("initiator"), str) else None
        description = sanitize_description(
            candidate.description, fallback=f"Peer registered from {initiator or 'unknown'}"
        )
        added = await self.add_peer(candidate, sync_source=initiator or "peer-registration", description=description)
        return RegistrationResult(
            200,
            True,
            added,
            not added,
            local,
            known_hosts=await self.known_identities(candidate.id),
        )

    async def exchange_peers(self, body: Any) -> ExchangeResult:
        body = body if isinstance(body, Mapping) else {}
        from_host = HostIdentity.from_dict(body.get("fromHost"))
        known_hosts = body.get("knownHosts")
        if from_host is None or not isinstance(known_hosts, list):
            return ExchangeResult(400, False, error="Missing required fields: fromHost, knownHosts")
        depth = _depth(body.get("propagationDepth"))
        if depth > self.max_depth:
            return ExchangeResult(200, False, error=f"Max propagation depth ({self.max_depth}) exceeded")
        propagation_id = body.get("propagationId")
        if isinstance(propagation_id, str) and propagation_id:
            if not await self.propagation.claim(propagation_id):
                return ExchangeResult(200, True)

        result = ExchangeResult(200, True)
        seen_ids: set[str] = set()
        to_probe: list[HostIdentity] = []
        for raw in known_hosts:
            candidate = HostIdentity.from_dict(raw)
            if candidate is None or candidate.id in seen_ids:
                continue
            seen_ids.add(candidate.id)
            if self.is_self(candidate.id) or candidate.id == from_host.id:
                continue
            if await self.find_known(candidate) is not None:
                result.already_known.append(candidate.id)
                continue
            to_probe.append(candidate)

        health = await self.health_checker(to_probe) if to_probe else {}
        for candidate in to_probe:
            if not health.get(candidate.id):
                result.unreachable.append(candidate.id)
                continue
            description = sanitize_description(
                candidate.description, fallback=f"Discovered via peer exchange from {from_host.name}"
            )
            if await self.add_peer(candidate, sync_source=f"peer-exchange:{from_host.id}", description=description):
                result.newly_added.append(candidate.id)
            else:
                result.already_known.append(candidate.id)
        logger.info(
            "peers.exchange",
            extra={
                "from_host": from_host.id,
                "added": len(result.newly_added),
                "known": len(result.already_known),
                "unreachable": len(result.unreachable),
            },
        )
        return result


@dataclass(slots=True)
class HostSyncResult:
    success: bool = False
    local_add: bool = False
    back_registered: bool = False
    peers_exchanged: int = 0
    peers_shared: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "localAdd": self.local_add,
            "backRegistered": self.back_registered,
            "peersExchanged": self.peers_exchanged,
            "peersShared": self.peers_shared,
            "errors": self.errors,
        }


@dataclass(slots=True)
class PeerRegistrationOutcome:
    success: bool
    already_known: bool = False
    known_hosts: list[HostIdentity] = field(default_factory=list)
    error: Optional[str] = None


class PeerSyncClient:
    """Outbound side of the host protocol. Network failures are reported, never raised."""

    def __init__(
        self,
        directory: PeerDirectory,
        *,
        api_path: str = "/api/v1",
        timeout: float = 10.0,
        health_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.directory = directory
        self.api_path = "/" + api_path.strip("/") if api_path.strip("/") else ""
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    def _endpoint(self, base_url: str, suffix: str) -> str:
        return f"{base_url.rstrip('/')}{self.api_path}{suffix}"

    def _from_host(self) -> dict[str, Any]:
        local = self.directory.local_identity()
        return {"id": local["id"], "name": local["name"], "url": local["url"]}

    async def check_health(self, hosts: Sequence[HostIdentity]) -> dict[str, bool]:
        return await check_hosts_health(hosts, timeout=self.health_timeout, transport=self._transport)

    async def register_with_peer(
        self, peer_url: str, *, propagation_id: Optional[str] = None, depth: int = 0
    ) -> PeerRegistrationOutcome:
        local = self.directory.local_identity()
        source: dict[str, Any] = {"initiator": local["id"], "timestamp": utcnow_naive().isoformat() + "Z"}
        if propagation_id:
            source["propagationId"] = propagation_id
            source["propagationDepth"] = depth
        request = {"host": local, "source": source}
        try:
            async with self._client() as client:
                response = await client.post(self._endpoint(peer_url, "/hosts/register-peer"), json=request)
        except httpx.HTTPError as exc:
            return PeerRegistrationOutcome(success=False, error=f"{type(exc).__name__}: {exc}")
        if not response.is_success:
            return PeerRegistrationOutcome(success=False, error=f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError:
            return PeerRegistrationOutcome(success=False, error="Invalid JSON response")
        known = [h for h in (HostIdentity.from_dict(raw) for raw in data.get("knownHosts") or []) if h is not None]
        return PeerRegistrationOutcome(
            success=bool(data.get("success")),
            already_known=bool(data.get("alreadyKnown")),
            known_hosts=known,
            error=data.get("error"),
        )

    async def _post_exchange(self, peer_url: str, request: dict[str, Any]) -> Optional[dict[str, Any]]:
        try:
            async with self._client() as client:
                response = await client.post(self._endpoint(peer_url, "/hosts/exchange-peers"), json=request)
            if not response.is_success:
                logger.info("peers.exchange_rejected", extra={"peer": peer_url, "status": response.status_code})
                return None
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("peers.exchange_failed", extra={"peer": peer_url, "error": str(exc)[:200]})
            return None

    async def learn_from_peer(self, peer_url: str, peer_known: Sequence[HostIdentity]) -> tuple[int, list[str]]:
        """Add reachable hosts the peer knows about, then share our known hosts with it."""
        errors: list[str] = []
        local_id = self.directory.self_identity.id
        candidates = []
        for host in peer_known:
            if self.directory.is_self(host.id) or await self.directory.find_known(host) is not None:
                continue
            candidates.append(host)
        health = await self.check_health(candidates) if candidates else {}
        added = 0
        for host in candidates:
            if not health.get(host.id):
                continue
            description = sanitize_description(host.description, fallback="Discovered via peer exchange")
            if await self.directory.add_peer(host, sync_source="peer-exchange", description=description):
                added += 1
            else:
                errors.append(f"Failed to add {host.name}: already present")
        ours = await self.directory.known_identities(local_id)
        if ours:
            await self._post_exchange(peer_url, {"fromHost": self._from_host(), "knownHosts": ours})
        return added, errors

    async def propagate_to_existing_peers(self, new_host: HostIdentity) -> tuple[int, list[str]]:
        """Tell every other known peer about ``new_host`` under one fresh propagation id."""
        propagation_id = uuid.uuid4().hex
        shared = 0
        errors: list[str] = []
        request = {
            "fromHost": self._from_host(),
            "knownHosts": [new_host.to_dict()],
            "propagationId": propagation_id,
            "propagationDepth": 1,
        }
        for peer in await self.directory.list_peers():
            if peer.id == new_host.id or self.directory.is_self(peer.id):
                continue
            data = await self._post_exchange(peer.url, request)
            if data is None:
                errors.append(f"Failed to propagate to {peer.name}")
            elif data.get("newlyAdded"):
                shared += 1
        return shared, errors

    async def add_host_with_sync(self, host: HostIdentity) -> HostSyncResult:
        result = HostSyncResult()
        if self.directory.is_self(host.id):
            result.errors.append("Cannot add self as peer")
            return result
        known = await self.directory.find_known(host)
        if known is None:
            description = sanitize_description(host.description, fallback="Added manually")
            result.local_add = await self.directory.add_peer(host, sync_source="manual", description=description)
        present = result.local_add or known is not None

        registration = await self.register_with_peer(host.url)
        result.back_registered = registration.success
        if not registration.success:
            result.errors.append(f"Back-registration failed: {registration.error}")
        elif registration.known_hosts:
            result.peers_exchanged, errors = await self.learn_from_peer(host.url, registration.known_hosts)
            result.errors.extend(errors)

        if result.local_add:
            result.peers_shared, errors = await self.propagate_to_existing_peers(host)
            result.errors.extend(errors)

        result.success = present
        logger.info("peers.host_synced", extra={"host": host.id, **result.to_dict()})
        return result

    async def sync_with_all_peers(self) -> dict[str, list[str]]:
        synced: list[str] = []
        failed: list[str] = []
        for peer in await self.directory.list_peers():
            if self.directory.is_self(peer.id):
                continue
            registration = await self.register_with_peer(peer.url)
            if not registration.success:
                failed.append(peer.id)
                continue
            synced.append(peer.id)
            if registration.known_hosts:
                await self.learn_from_peer(peer.url, registration.known_hosts)
        return {"synced": synced, "failed": failed}
