"""Command-line interface for running and operating the AMP relay."""

from __future__ import annotations

import asyncio
import atexit
import inspect
import json
from typing import Any, Optional

import typer
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import get_settings
from .db import ensure_schema, reset_database_state
from .errors import AmpError
from .http import build_http_app
from .peers import HostIdentity
from .services import AmpServices, build_services
from .utils import iso_utc

# aiosqlite background threads can block interpreter shutdown if the engine is left open.
atexit.register(reset_database_state)

console = Console()

app = typer.Typer(help="Operate the AMP relay: routing, relay queue and host federation.", invoke_without_command=True)
agents_app = typer.Typer(help="Register and inspect local agents")
relay_app = typer.Typer(help="Inspect and maintain the relay queue")
hosts_app = typer.Typer(help="Peer hosts and mesh sync")
app.add_typer(agents_app, name="agents")
app.add_typer(relay_app, name="relay")
app.add_typer(hosts_app, name="hosts")


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None)


def _run_async(coro: Any) -> Any:
    """Run a coroutine, then dispose the engine so aiosqlite threads do not outlive it."""
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


async def _with_services() -> AmpServices:
    await ensure_schema()
    return build_services(get_settings())


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the AMP HTTP API."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    console.print(
        Panel.fit(
            f"provider: [bold]{settings.amp.provider_name}[/]\n"
            f"host id: [bold]{settings.host.id}[/]\n"
            f"listening: http://{resolved_host}:{resolved_port}{settings.http.path}",
            title="AMP Relay",
            border_style="cyan",
        )
    )
    application = build_http_app(settings)
    _sig = inspect.signature(uvicorn.run)
    _kwargs: dict[str, Any] = {"host": resolved_host, "port": resolved_port, "log_level": "info"}
    if "ws" in _sig.parameters:
        _kwargs["ws"] = "none"
    uvicorn.run(application, **_kwargs)


@agents_app.command("register")
def agents_register(
    name: str = typer.Argument(..., help="Agent name (local part of its address)"),
    alias: Optional[str] = typer.Option(None, help="Alternate name the agent answers to"),
    session: Optional[str] = typer.Option(None, "--session", help="Terminal session name bound to the agent"),
    test_key: bool = typer.Option(False, "--test-key", help="Issue an amp_test_sk_ key"),
) -> None:
    """Register an agent and print its API key (shown only once)."""

    async def _run():
        services = await _with_services()
        return await services.directory.register_agent(name, alias=alias, session_name=session, test_key=test_key)

    try:
        registered = _run_async(_run())
    except AmpError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    table = Table(title=f"Agent {registered.agent.name}", show_header=False)
    table.add_row("id", registered.agent.id)
    table.add_row("address", registered.agent.address)
    table.add_row("public key", registered.agent.public_key)
    table.add_row("key file", str(registered.key_path))
    table.add_row("api key", registered.api_key)
    console.print(table)
    console.print("[yellow]Store the API key now; it cannot be shown again.[/]")


@agents_app.command("list")
def agents_list() -> None:
    """List registered agents."""

    async def _run():
        services = await _with_services()
        return await services.directory.list_agents()

    agents = _run_async(_run())
    table = Table(title="Agents")
    table.add_column("Name")
    table.add_column("Address")
    table.add_column("Online")
    table.add_column("Last seen")
    for agent in agents:
        table.add_row(
            agent.name,
            agent.address,
            "yes" if agent.online else "no",
            iso_utc(agent.last_seen_at) if agent.last_seen_at else "-",
        )
    console.print(table)


@agents_app.command("presence")
def agents_presence(
    name: str = typer.Argument(..., help="Agent name, alias or id"),
    online: bool = typer.Option(True, "--online/--offline", help="Mark the delivery channel active or inactive"),
) -> None:
    """Mark an agent online or offline."""

    async def _run():
        services = await _with_services()
        agent = await services.directory.resolve(name)
        if agent is None:
            return None
        return await services.directory.set_presence(agent.id, online)

    record = _run_async(_run())
    if record is None:
        console.print(f"[red]Agent '{name}' not found.[/]")
        raise typer.Exit(code=1)
    console.print(f"[green]{record.name}[/] is now {'online' if record.online else 'offline'}.")


@relay_app.command("pending")
def relay_pending(
    recipient: str = typer.Argument(..., help="Agent name, alias or id"),
    limit: int = typer.Option(10, help="Maximum entries to show"),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of a table"),
) -> None:
    """Show relay entries waiting for a recipient (counts as a pickup attempt)."""

    async def _run():
        services = await _with_services()
        agent = await services.directory.resolve(recipient)
        keys = [agent.id, agent.name] if agent is not None else [recipient]
        _key, entries = await services.relay.pending_for(keys, limit)
        return entries

    entries = _run_async(_run())
    if as_json:
        typer.echo(json.dumps([entry.to_wire() for entry in entries], indent=2))
        return
    table = Table(title=f"Pending for {recipient}")
    table.add_column("Message id")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Queued")
    table.add_column("Attempts", justify="right")
    for entry in entries:
        table.add_row(
            entry.message_id,
            str(entry.envelope.get("from", "")),
            str(entry.envelope.get("subject", "")),
            iso_utc(entry.queued_at),
            str(entry.attempts),
        )
    console.print(table)


@relay_app.command("sweep")
def relay_sweep() -> None:
    """Remove expired relay entries and stale replay records now."""

    async def _run():
        services = await _with_services()
        expired = await services.relay.expire_all()
        replay = await services.replay_guard.sweep()
        return expired, replay

    expired, replay = _run_async(_run())
    console.print(f"Removed [bold]{expired}[/] expired relay entries and [bold]{replay}[/] replay records.")


@hosts_app.command("identity")
def hosts_identity() -> None:
    """Show this host's identity as peers see it."""
    services = build_services(get_settings())
    console.print_json(json.dumps(services.peers.identity()))


@hosts_app.command("list")
def hosts_list() -> None:
    """List known peer hosts."""

    async def _run():
        services = await _with_services()
        return await services.peers.list_peers(enabled_only=False)

    peers = _run_async(_run())
    table = Table(title="Peer hosts")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("URL")
    table.add_column("Enabled")
    table.add_column("Source")
    for peer in peers:
        table.add_row(peer.id, peer.name, peer.url, "yes" if peer.enabled else "no", peer.sync_source)
    console.print(table)


@hosts_app.command("add")
def hosts_add(
    host_id: str = typer.Argument(..., help="Peer host id"),
    url: str = typer.Argument(..., help="Peer base URL, e.g. http://10.0.0.5:23000"),
    name: Optional[str] = typer.Option(None, help="Display name (defaults to the id)"),
    description: str = typer.Option("", help="Free-form description"),
    alias: Optional[list[str]] = typer.Option(None, "--alias", help="Other identifiers for the peer (repeatable)"),
) -> None:
    """Add a peer, register with it, and share it with existing peers."""
    host = HostIdentity(
        id=host_id,
        name=name or host_id,
        url=url.rstrip("/"),
        description=description,
        aliases=tuple(alias or ()),
    )

    async def _run():
        services = await _with_services()
        return await services.peer_sync.add_host_with_sync(host)

    result = _run_async(_run())
    console.print_json(json.dumps(result.to_dict()))
    if not result.success:
        raise typer.Exit(code=1)


@hosts_app.command("sync")
def hosts_sync() -> None:
    """Re-register with every known peer and exchange peer lists."""

    async def _run():
        services = await _with_services()
        return await services.peer_sync.sync_with_all_peers()

    result = _run_async(_run())
    console.print(f"synced: {', '.join(result['synced']) or '-'}")
    console.print(f"failed: {', '.join(result['failed']) or '-'}")
