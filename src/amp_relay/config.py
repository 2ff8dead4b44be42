"""Settings for the relay, read from the environment (or ``.env``) via python-decouple.

Every value has a default and malformed values fall back to it, so a typo in
the environment never keeps the service from starting.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from decouple import Config, RepositoryEmpty, RepositoryEnv

ENV_FILE = Path(".env")


def _load_source() -> Config:
    # No .env in CI and tests: read the process environment only
    if ENV_FILE.is_file():
        return Config(RepositoryEnv(str(ENV_FILE)))
    return Config(RepositoryEmpty())


_source = _load_source()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """Where the API listens and how requests are logged."""

    host: str
    port: int
    # Prefix under which every AMP endpoint is mounted (health endpoints are not prefixed)
    path: str
    request_log_enabled: bool
    cors_enabled: bool
    cors_origins: list[str]


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """SQLAlchemy async URL and pool sizing (None keeps the driver default)."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class StorageSettings:
    """Filesystem storage configuration (agent key material)."""

    root: str


@dataclass(slots=True, frozen=True)
class AmpSettings:
    """Addressing, routing, relay and federation knobs.

    The relay queue and replay guard sweep lazily: a request that arrives after
    ``*_sweep_interval_seconds`` have elapsed since the last sweep pays for it.
    """

    provider_name: str
    organization: str
    local_suffixes: list[str]
    delivery_timeout_seconds: float
    relay_ttl_seconds: int
    relay_default_limit: int
    relay_max_limit: int
    relay_sweep_interval_seconds: int
    replay_window_seconds: int
    replay_sweep_interval_seconds: int
    federation_rate_limit_window_seconds: int
    federation_rate_limit_max_requests: int
    rate_limit_backend: str  # memory or redis
    rate_limit_redis_url: str


@dataclass(slots=True, frozen=True)
class HostSettings:
    """This host's identity and peer-registration settings."""

    id: str
    name: str
    url: str
    description: str
    aliases: list[str]
    max_propagation_depth: int
    propagation_ttl_seconds: int
    propagation_sweep_interval_seconds: int
    request_timeout_seconds: float
    health_check_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class NotificationSettings:
    """Signal-file notifications emitted after local delivery.

    Signal file location: {signals_dir}/agents/{agent_id}.signal
    """

    enabled: bool
    signals_dir: str
    debounce_ms: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Everything the relay reads from the environment."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    storage: StorageSettings
    amp: AmpSettings
    host: HostSettings
    notifications: NotificationSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool



def _str(name: str, default: str = "") -> str:
    return str(_source(name, default=default))


def _bool(name: str, default: bool) -> bool:
    value = _str(name).strip().lower()
    if value in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _int(name: str, default: int) -> int:
    try:
        return int(_str(name).strip())
    except ValueError:
        return default


def _optional_int(name: str) -> Optional[int]:
    raw = _str(name).strip()
    return int(raw) if raw.lstrip("-").isdigit() else None


def _float(name: str, default: float) -> float:
    try:
        return float(_str(name).strip())
    except ValueError:
        return default


def _csv(name: str, default: str = "") -> list[str]:
    return [part.strip() for part in _str(name, default).split(",") if part.strip()]


def _default_host_id() -> str:
    try:
        return socket.gethostname().split(".")[0].lower() or "local"
    except OSError:
        return "local"


def _load_http(environment: str) -> HttpSettings:
    return HttpSettings(
        host=_str("HTTP_HOST", "127.0.0.1"),
        port=_int("HTTP_PORT", 23000),
        path="/" + _str("HTTP_PATH", "/api/v1").strip("/"),
        request_log_enabled=_bool("HTTP_REQUEST_LOG_ENABLED", False),
        # Browser dashboards on another port call the API during local development
        cors_enabled=_bool("HTTP_CORS_ENABLED", environment.lower() == "development"),
        cors_origins=_csv("HTTP_CORS_ORIGINS"),
    )


def _load_amp() -> AmpSettings:
    backend = _str("AMP_RATE_LIMIT_BACKEND", "memory").strip().lower()
    return AmpSettings(
        provider_name=_str("AMP_PROVIDER_NAME", "aimaestro.local").strip().lower(),
        organization=_str("AMP_ORGANIZATION", "default").strip().lower(),
        local_suffixes=[suffix.lower() for suffix in _csv("AMP_LOCAL_SUFFIXES", ".local")],
        delivery_timeout_seconds=_float("AMP_DELIVERY_TIMEOUT_SECONDS", 5.0),
        relay_ttl_seconds=_int("AMP_RELAY_TTL_SECONDS", 7 * 86400),
        relay_default_limit=_int("AMP_RELAY_DEFAULT_LIMIT", 10),
        relay_max_limit=_int("AMP_RELAY_MAX_LIMIT", 100),
        relay_sweep_interval_seconds=_int("AMP_RELAY_SWEEP_INTERVAL_SECONDS", 3600),
        replay_window_seconds=_int("AMP_REPLAY_WINDOW_SECONDS", 86400),
        replay_sweep_interval_seconds=_int("AMP_REPLAY_SWEEP_INTERVAL_SECONDS", 3600),
        federation_rate_limit_window_seconds=_int("AMP_FEDERATION_RATE_LIMIT_WINDOW_SECONDS", 60),
        federation_rate_limit_max_requests=_int("AMP_FEDERATION_RATE_LIMIT_MAX_REQUESTS", 120),
        rate_limit_backend=backend if backend in {"memory", "redis"} else "memory",
        rate_limit_redis_url=_str("AMP_RATE_LIMIT_REDIS_URL"),
    )


def _load_host(http: HttpSettings) -> HostSettings:
    host_id = _str("HOST_ID").strip() or _default_host_id()
    return HostSettings(
        id=host_id,
        name=_str("HOST_NAME").strip() or host_id,
        url=_str("HOST_URL").strip().rstrip("/") or f"http://{http.host}:{http.port}",
        description=_str("HOST_DESCRIPTION"),
        aliases=_csv("HOST_ALIASES"),
        max_propagation_depth=_int("HOST_MAX_PROPAGATION_DEPTH", 3),
        propagation_ttl_seconds=_int("HOST_PROPAGATION_TTL_SECONDS", 3600),
        propagation_sweep_interval_seconds=_int("HOST_PROPAGATION_SWEEP_INTERVAL_SECONDS", 300),
        request_timeout_seconds=_float("HOST_REQUEST_TIMEOUT_SECONDS", 10.0),
        health_check_timeout_seconds=_float("HOST_HEALTH_CHECK_TIMEOUT_SECONDS", 5.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read every setting once; later calls return the cached instance."""
    environment = _str("APP_ENVIRONMENT", "development")
    http = _load_http(environment)
    return Settings(
        environment=environment,
        http=http,
        database=DatabaseSettings(
            url=_str("DATABASE_URL", "sqlite+aiosqlite:///./amp_relay.sqlite3"),
            echo=_bool("DATABASE_ECHO", False),
            pool_size=_optional_int("DATABASE_POOL_SIZE"),
            max_overflow=_optional_int("DATABASE_MAX_OVERFLOW"),
            pool_timeout=_optional_int("DATABASE_POOL_TIMEOUT"),
        ),
        storage=StorageSettings(root=_str("STORAGE_ROOT", "~/.amp_relay")),
        amp=_load_amp(),
        host=_load_host(http),
        notifications=NotificationSettings(
            enabled=_bool("NOTIFICATIONS_ENABLED", False),
            signals_dir=_str("NOTIFICATIONS_SIGNALS_DIR", "~/.amp_relay/signals"),
            debounce_ms=_int("NOTIFICATIONS_DEBOUNCE_MS", 100),
        ),
        log_rich_enabled=_bool("LOG_RICH_ENABLED", True),
        log_level=_str("LOG_LEVEL", "INFO"),
        log_json_enabled=_bool("LOG_JSON_ENABLED", False),
    )


def clear_settings_cache() -> None:
    """Forget cached settings so the next ``get_settings()`` rereads the environment."""
    get_settings.cache_clear()
