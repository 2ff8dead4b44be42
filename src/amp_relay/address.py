"""AMP addresses: ``name@[scope.]organization.provider``.

The provider is always the final two dot-segments of the domain
(``aimaestro.local``, ``crabmail.ai``); the segment before it is the
organization and anything further left is an optional scope.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

PROVIDER_SEGMENTS = 2


@dataclass(slots=True, frozen=True)
class AMPAddress:
    name: str
    organization: str
    provider: str
    scope: Optional[str] = None

    @property
    def domain(self) -> str:
        parts = [self.scope, self.organization, self.provider]
        return ".".join(p for p in parts if p)

    @property
    def full(self) -> str:
        return f"{self.name}@{self.domain}"

    def __str__(self) -> str:
        return self.full


def parse_address(raw: object) -> Optional[AMPAddress]:
    """Parse ``raw`` into an :class:`AMPAddress`, or return None when it is not one.

    Never raises. Rejects anything without exactly one ``@``, an empty name,
    empty dot-segments, or a domain with no organization segment left after
    removing the provider.
    """
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if text.count("@") != 1:
        return None
    name, domain = text.split("@", 1)
    if not name or not domain:
        return None
    parts = domain.lower().split(".")
    if any(not part for part in parts):
        return None
    if len(parts) <= PROVIDER_SEGMENTS:
        return None
    provider = ".".join(parts[-PROVIDER_SEGMENTS:])
    tenant_parts = parts[:-PROVIDER_SEGMENTS]
    organization = tenant_parts[-1]
    scope = ".".join(tenant_parts[:-1]) or None
    return AMPAddress(name=name, organization=organization, provider=provider, scope=scope)


def format_address(name: str, organization: str, provider: str, scope: Optional[str] = None) -> str:
    return AMPAddress(name=name, organization=organization, provider=provider, scope=scope).full


def is_local_provider(address: AMPAddress, own_provider: str, local_suffixes: Iterable[str] = (".local",)) -> bool:
    """True when ``address`` is served by this system rather than a federated provider."""
    provider = address.provider.lower()
    if provider == own_provider.lower():
        return True
    return any(provider.endswith(suffix.lower()) for suffix in local_suffixes if suffix)
