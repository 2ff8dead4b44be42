"""API-key issuing and bearer authentication for AMP agents.

Keys look like ``amp_live_sk_<64 hex>`` (``amp_test_sk_`` for test keys).
Only ``sha256:<hex>`` of a key is ever persisted.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select

from .db import get_session
from .errors import UNAUTHORIZED, AmpError
from .models import Agent

logger = logging.getLogger(__name__)

LIVE_KEY_PREFIX = "amp_live_sk_"
TEST_KEY_PREFIX = "amp_test_sk_"
_API_KEY_RE = re.compile(r"^amp_(?:live|test)_sk_[0-9a-f]{64}$")
_HASH_PREFIX = "sha256:"


@dataclass(slots=True, frozen=True)
class AuthContext:
    agent_id: str
    name: str
    address: str


def generate_api_key(*, test: bool = False) -> str:
    prefix = TEST_KEY_PREFIX if test else LIVE_KEY_PREFIX
    return prefix + secrets.token_hex(32)


def hash_api_key(api_key: str) -> str:
    return _HASH_PREFIX + hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def verify_api_key_hash(api_key: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_api_key(api_key), stored_hash or "")


def is_valid_api_key_format(api_key: str) -> bool:
    return bool(api_key) and _API_KEY_RE.fullmatch(api_key) is not None


def extract_api_key_from_header(authorization: Optional[str]) -> Optional[str]:
    """Accept ``Bearer <key>`` or a bare key; anything else yields None."""
    if not authorization:
        return None
    value = authorization.strip()
    scheme, _, rest = value.partition(" ")
    if rest and scheme.lower() == "bearer":
        value = rest.strip()
    elif rest:
        return None
    return value or None


def _unauthorized() -> AmpError:
    # Same message for every failure so callers learn nothing about which agents exist
    return AmpError(UNAUTHORIZED, "Invalid or missing API key")


async def authenticate(
    authorization: Optional[str],
    *,
    session_factory: Callable[[], Any] = get_session,
) -> AuthContext:
    """Resolve an ``Authorization`` header to the agent it belongs to or raise ``unauthorized``."""
    api_key = extract_api_key_from_header(authorization)
    if api_key is None or not is_valid_api_key_format(api_key):
        raise _unauthorized()
    key_hash = hash_api_key(api_key)
    async with session_factory() as session:
        result = await session.execute(select(Agent).where(Agent.api_key_hash == key_hash))
        agent = result.scalars().first()
    if agent is None or not verify_api_key_hash(api_key, agent.api_key_hash):
        logger.info("auth.rejected")
        raise _unauthorized()
    return AuthContext(agent_id=agent.id, name=agent.name, address=agent.address)
