import json
from typing import Any

import pytest
from typer.testing import CliRunner

from amp_relay.cli import _run_async, app
from amp_relay.db import ensure_schema, get_session
from amp_relay.models import Agent, RelayEntry


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "serve-http" in result.output


def test_cli_serve_http_uses_settings(isolated_env, monkeypatch):
    runner = CliRunner()
    call_args: dict[str, Any] = {}

    def fake_uvicorn_run(app, host, port, log_level="info"):
        call_args["app"] = app
        call_args["host"] = host
        call_args["port"] = port

    monkeypatch.setattr("uvicorn.run", fake_uvicorn_run)
    result = runner.invoke(app, ["serve-http"])
    assert result.exit_code == 0
    assert call_args["host"] == "127.0.0.1"
    assert call_args["port"] == 8765
    assert call_args["app"].state.services.settings.host.id == "test-host"


def test_cli_serve_http_overrides(isolated_env, monkeypatch):
    runner = CliRunner()
    call_args: dict[str, Any] = {}

    def fake_uvicorn_run(app, host, port, log_level="info"):
        call_args.update(host=host, port=port)

    monkeypatch.setattr("uvicorn.run", fake_uvicorn_run)
    result = runner.invoke(app, ["serve-http", "--host", "0.0.0.0", "--port", "23000"])
    assert result.exit_code == 0
    assert call_args == {"host": "0.0.0.0", "port": 23000}


def test_cli_agents_register_and_list(isolated_env):
    runner = CliRunner()
    result = runner.invoke(app, ["agents", "register", "alice", "--alias", "al"])
    assert result.exit_code == 0
    assert "alice@org.aimaestro.local" in result.output
    assert "amp_live_sk_" in result.output

    async def _fetch():
        await ensure_schema()
        async with get_session() as session:
            agent = (await session.execute(Agent.__table__.select())).first()
            return agent

    row = _run_async(_fetch())
    assert row.name == "alice"
    assert row.alias == "al"

    listed = runner.invoke(app, ["agents", "list"])
    assert listed.exit_code == 0
    assert "alice" in listed.output


def test_cli_agents_register_duplicate_fails(isolated_env):
    runner = CliRunner()
    assert runner.invoke(app, ["agents", "register", "alice"]).exit_code == 0
    result = runner.invoke(app, ["agents", "register", "alice"])
    assert result.exit_code == 1
    assert "already registered" in result.output


def test_cli_agents_presence(isolated_env):
    runner = CliRunner()
    runner.invoke(app, ["agents", "register", "bob"])
    online = runner.invoke(app, ["agents", "presence", "bob", "--online"])
    assert online.exit_code == 0
    assert "online" in online.output
    missing = runner.invoke(app, ["agents", "presence", "nobody"])
    assert missing.exit_code == 1
    assert "not found" in missing.output


def test_cli_relay_pending_json(isolated_env):
    runner = CliRunner()

    async def _seed():
        await ensure_schema()
        from amp_relay.config import get_settings
        from amp_relay.services import build_services

        services = build_services(get_settings())
        await services.relay.enqueue(
            "carol",
            {"id": "msg_1", "from": "alice@org.aimaestro.local", "to": "carol@org.aimaestro.local", "subject": "Hi"},
            {"type": "notification", "message": "hello"},
        )

    _run_async(_seed())
    result = runner.invoke(app, ["relay", "pending", "carol", "--json"])
    assert result.exit_code == 0
    entries = json.loads(result.output)
    assert [e["id"] for e in entries] == ["msg_1"]
    assert entries[0]["attempts"] == 1


def test_cli_relay_sweep(isolated_env):
    runner = CliRunner()
    result = runner.invoke(app, ["relay", "sweep"])
    assert result.exit_code == 0
    assert "Removed" in result.output

    async def _count():
        async with get_session() as session:
            return (await session.execute(RelayEntry.__table__.select())).all()

    assert _run_async(_count()) == []


def test_cli_hosts_identity_and_list(isolated_env):
    runner = CliRunner()
    identity = runner.invoke(app, ["hosts", "identity"])
    assert identity.exit_code == 0
    assert json.loads(identity.output)["id"] == "test-host"

    listed = runner.invoke(app, ["hosts", "list"])
    assert listed.exit_code == 0
    assert "Peer hosts" in listed.output


def test_cli_hosts_add_rejects_self(isolated_env):
    runner = CliRunner()
    result = runner.invoke(app, ["hosts", "add", "test-host", "http://test-host.example:8765"])
    assert result.exit_code == 1
    assert "Cannot add self as peer" in result.output


def test_module_entry_point_dispatches(isolated_env, monkeypatch):
    from amp_relay.__main__ import main

    monkeypatch.setattr("sys.argv", ["amp-relay", "hosts", "identity"])
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 0
