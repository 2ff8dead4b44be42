import contextlib
from pathlib import Path

import pytest
import pytest_asyncio

from amp_relay.config import clear_settings_cache, get_settings
from amp_relay.db import dispose_engine, ensure_schema, reset_database_state
from amp_relay.services import build_services


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database/storage settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("HTTP_PATH", "/api/v1/")
    monkeypatch.setenv("HTTP_REQUEST_LOG_ENABLED", "false")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("AMP_PROVIDER_NAME", "aimaestro.local")
    monkeypatch.setenv("AMP_ORGANIZATION", "org")
    monkeypatch.setenv("AMP_RATE_LIMIT_BACKEND", "memory")
    monkeypatch.setenv("HOST_ID", "test-host")
    monkeypatch.setenv("HOST_NAME", "Test Host")
    monkeypatch.setenv("HOST_URL", "http://test-host.example:8765")
    monkeypatch.setenv("HOST_ALIASES", "test-alias,10.0.0.1")
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    monkeypatch.setenv("NOTIFICATIONS_SIGNALS_DIR", str(tmp_path / "signals"))
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest_asyncio.fixture
async def services(isolated_env):
    """A fresh service container over an empty schema."""
    await ensure_schema()
    svc = build_services(get_settings())
    try:
        yield svc
    finally:
        await svc.routing.drain()
        await svc.notifier.drain()
        await dispose_engine()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state across tests, including ones without ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
