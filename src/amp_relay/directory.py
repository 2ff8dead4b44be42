"""Agent directory: registration, presence, key material and recipient resolution.

Recipient resolution is an ordered list of resolver strategies, each a pure
function ``(identifier, agents) -> agent | None``. The first strategy that
matches wins:

1. exact stable id
2. name (case-insensitive)
3. alias (case-insensitive)
4. session name: exact, or ``<prefix>-<name>`` / ``<prefix>_<name>``
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .address import format_address
from .auth import generate_api_key, hash_api_key
from .db import get_session, retry_on_db_lock
from .envelope import generate_keypair
from .errors import INVALID_FIELD, NOT_FOUND, AmpError, invalid_field
from .models import Agent
from .utils import utcnow_naive, validate_agent_name_format

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AgentRecord:
    id: str
    name: str
    address: str
    alias: Optional[str] = None
    session_name: Optional[str] = None
    public_key: str = ""
    online: bool = False
    last_seen_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, agent: Agent) -> "AgentRecord":
        return cls(
            id=agent.id,
            name=agent.name,
            address=agent.address,
            alias=agent.alias,
            session_name=agent.session_name,
            public_key=agent.public_key,
            online=agent.online,
            last_seen_at=agent.last_seen_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "alias": self.alias,
            "session_name": self.session_name,
            "public_key": self.public_key,
            "online": self.online,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


@dataclass(slots=True, frozen=True)
class RegisteredAgent:
    agent: AgentRecord
    api_key: str
    key_path: Path


Resolver = Callable[[str, Sequence[AgentRecord]], Optional[AgentRecord]]


def resolve_by_id(identifier: str, agents: Sequence[AgentRecord]) -> Optional[AgentRecord]:
    return next((a for a in agents if a.id == identifier), None)


def resolve_by_name(identifier: str, agents: Sequence[AgentRecord]) -> Optional[AgentRecord]:
    wanted = identifier.lower()
    return next((a for a in agents if a.name.lower() == wanted), None)


def resolve_by_alias(identifier: str, agents: Sequence[AgentRecord]) -> Optional[AgentRecord]:
    wanted = identifier.lower()
    return next((a for a in agents if a.alias and a.alias.lower() == wanted), None)


def resolve_by_session_name(identifier: str, agents: Sequence[AgentRecord]) -> Optional[AgentRecord]:
    wanted = identifier.lower()
    exact = next((a for a in agents if a.session_name and a.session_name.lower() == wanted), None)
    if exact is not None:
        return exact
    for agent in agents:
        session = (agent.session_name or "").lower()
        if session.endswith(f"-{wanted}") or session.endswith(f"_{wanted}"):
            return agent
    return None


DEFAULT_RESOLVERS: tuple[Resolver, ...] = (
    resolve_by_id,
    resolve_by_name,
    resolve_by_alias,
    resolve_by_session_name,
)


def resolve_agent(
    identifier: str, agents: Sequence[AgentRecord], resolvers: Sequence[Resolver] = DEFAULT_RESOLVERS
) -> Optional[AgentRecord]:
    if not identifier:
        return None
    for resolver in resolvers:
        match = resolver(identifier, agents)
        if match is not None:
            return match
    return None


def _write_private_key(path: Path, seed: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(seed)


class AgentDirectory:
    def __init__(
        self,
        *,
        provider: str,
        organization: str,
        storage_root: str | Path,
        resolvers: Sequence[Resolver] = DEFAULT_RESOLVERS,
        session_factory: Callable[[], Any] = get_session,
        clock: Callable[[], datetime] = utcnow_naive,
    ) -> None:
        self.provider = provider
        self.organization = organization
        self.keys_dir = Path(storage_root).expanduser() / "keys"
        self.resolvers = tuple(resolvers)
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    def key_path(self, agent_id: str) -> Path:
        return self.keys_dir / f"{agent_id}.key"

    async def load_signing_key(self, agent_id: str) -> Optional[bytes]:
        """Return the agent's 32-byte Ed25519 seed, or None when no key file exists."""
        path = self.key_path(agent_id)

        def _read() -> Optional[bytes]:
            if not path.is_file():
                return None
            return path.read_bytes()

        seed = await asyncio.to_thread(_read)
        if seed is not None and len(seed) not in (32, 64):
            logger.warning("directory.bad_key_file", extra={"agent_id": agent_id, "length": len(seed)})
            return None
        return seed

    async def list_agents(self) -> list[AgentRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(Agent).order_by(Agent.name))
            return [AgentRecord.from_model(agent) for agent in result.scalars().all()]

    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        async with self._session_factory() as session:
            agent = await session.get(Agent, agent_id)
            return AgentRecord.from_model(agent) if agent is not None else None

    async def resolve(self, identifier: str) -> Optional[AgentRecord]:
        return resolve_agent(identifier, await self.list_agents(), self.resolvers)

    @retry_on_db_lock()
    async def register_agent(
        self,
        name: str,
        *,
        alias: Optional[str] = None,
        session_name: Optional[str] = None,
        test_key: bool = False,
    ) -> RegisteredAgent:
        """Create an agent with a fresh keypair and API key. The API key is returned once."""
        name = (name or "").strip()
        if not validate_agent_name_format(name):
            raise invalid_field("name", "name must be 1-128 characters of letters, digits, '.', '_' or '-'")
        agent_id = uuid.uuid4().hex
        seed, public_key = generate_keypair()
        api_key = generate_api_key(test=test_key)
        agent = Agent(
            id=agent_id,
            name=name,
            alias=(alias or "").strip() or None,
            session_name=(session_name or "").strip() or None,
            address=format_address(name, self.organization, self.provider),
            public_key=public_key,
            api_key_hash=hash_api_key(api_key),
            created_at=self._clock(),
        )
        async with self._lock:
            async with self._session_factory() as session:
                # Names resolve case-insensitively, so "Bob" and "bob" would collide on delivery
                result = await session.execute(select(Agent.id).where(func.lower(Agent.name) == name.lower()))
                if result.first() is not None:
                    raise AmpError(INVALID_FIELD, f"agent '{name}' is already registered", status_code=409, field="name")
                session.add(agent)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise AmpError(
                        INVALID_FIELD, f"agent '{name}' is already registered", status_code=409, field="name"
                    ) from exc
                await session.refresh(agent)
        path = self.key_path(agent_id)
        await asyncio.to_thread(_write_private_key, path, seed)
        logger.info("directory.agent_registered", extra={"agent_id": agent_id, "agent_name": name})
        return RegisteredAgent(agent=AgentRecord.from_model(agent), api_key=api_key, key_path=path)

    @retry_on_db_lock()
    async def set_presence(self, agent_id: str, online: bool) -> AgentRecord:
        async with self._lock:
            async with self._session_factory() as session:
                agent = await session.get(Agent, agent_id)
                if agent is None:
                    raise AmpError(NOT_FOUND, "agent not found")
                agent.online = online
                agent.last_seen_at = self._clock()
                session.add(agent)
                await session.commit()
                await session.refresh(agent)
        logger.info("directory.presence", extra={"agent_id": agent_id, "online": online})
        return AgentRecord.from_model(agent)
