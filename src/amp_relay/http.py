"""HTTP transport: the AMP API on FastAPI."""

from __future__ import annotations

import argparse
import contextlib
import inspect
import logging
import time
from collections.abc import AsyncIterator, Mapping
from typing import Any, Optional, cast

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .auth import AuthContext, authenticate
from .config import Settings, get_settings
from .db import dispose_engine, ensure_schema, get_session
from .directory import AgentRecord
from .errors import INTERNAL_ERROR, INVALID_REQUEST, MISSING_HEADER, UNAUTHORIZED, AmpError, invalid_field, missing_field
from .federation import PROVIDER_HEADER
from .relay import MAX_BATCH_ACK
from .services import AmpServices, build_services

_LOGGING_CONFIGURED = False


def _configure_logging(settings: Settings) -> None:
    """Route structlog through the configured level and renderer; runs once per process."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    renderer: Any
    if settings.log_json_enabled:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.processors.KeyValueRenderer(key_order=["event", "method", "path", "status"])
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Per-cursor DEBUG chatter from the driver and per-request lines from the peer client
    for noisy, noisy_level in (("aiosqlite", logging.INFO), ("httpx", logging.WARNING)):
        logging.getLogger(noisy).setLevel(noisy_level)
    _LOGGING_CONFIGURED = True


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, *, rich_enabled: bool = True) -> None:
        super().__init__(app)
        self.rich_enabled = rich_enabled
        self._console = Console(width=100) if rich_enabled else None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.time()
        response = await call_next(request)
        dur_ms = int((time.time() - start) * 1000)
        method = request.method
        path = request.url.path
        status_code = getattr(response, "status_code", 0)
        client = request.client.host if request.client else "-"
        structlog.get_logger("http").info(
            "request",
            method=method,
            path=path,
            status=status_code,
            duration_ms=dur_ms,
            client_ip=client,
        )
        if self._console is not None:
            title = Text.assemble(
                (method, "bold blue"),
                ("  "),
                (path, "bold white"),
                ("  "),
                (f"{status_code}", "bold green" if 200 <= status_code < 400 else "bold red"),
                ("  "),
                (f"{dur_ms}ms", "bold yellow"),
            )
            body = Text.assemble(("client: ", "cyan"), (client, "white"))
            self._console.print(Panel(body, title=title, border_style="dim"))
        return response


async def readiness_check() -> None:
    """Raise unless the schema exists and the database answers a trivial query."""
    await ensure_schema()
    async with get_session() as session:
        (await session.execute(text("SELECT 1"))).scalar_one()


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise AmpError(INVALID_REQUEST, "Request body must be valid JSON") from exc


async def _services(request: Request) -> AmpServices:
    # ASGI transports without lifespan support never run startup; ensure_schema is a no-op once created
    await ensure_schema()
    return cast(AmpServices, request.app.state.services)


async def _authenticated_agent(request: Request, services: AmpServices) -> tuple[AuthContext, AgentRecord]:
    context = await authenticate(request.headers.get("authorization"), session_factory=services.session_factory)
    agent = await services.directory.get(context.agent_id)
    if agent is None:
        raise AmpError(UNAUTHORIZED, "Invalid or missing API key")
    return context, agent


def _parse_limit(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise invalid_field("limit", "limit must be an integer") from exc
    if value < 1:
        raise invalid_field("limit", "limit must be at least 1")
    return value


def build_http_app(settings: Optional[Settings] = None, services: Optional[AmpServices] = None) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(settings)
    services = services or build_services(settings)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await ensure_schema(settings)
        try:
            yield
        finally:
            await services.routing.drain()
            await services.notifier.drain()
            await dispose_engine()

    fastapi_app = FastAPI(title="AMP Relay", lifespan=lifespan)
    fastapi_app.state.services = services
    app_any = cast(Any, fastapi_app)

    if settings.http.request_log_enabled:
        app_any.add_middleware(RequestLoggingMiddleware, rich_enabled=settings.log_rich_enabled)

    if settings.http.cors_enabled:
        app_any.add_middleware(
            CORSMiddleware,
            allow_origins=settings.http.cors_origins or ["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @fastapi_app.exception_handler(AmpError)
    async def amp_error_handler(request: Request, exc: AmpError) -> JSONResponse:
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
        return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)

    @fastapi_app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        structlog.get_logger("http").error(
            "unhandled_error", path=request.url.path, error_type=type(exc).__name__, error=str(exc)[:500]
        )
        return JSONResponse(
            {"error": INTERNAL_ERROR, "message": "Internal server error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    # Health endpoints
    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive"})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        try:
            await readiness_check()
        except Exception as exc:
            structlog.get_logger("health").error("readiness_failed", error_type=type(exc).__name__, error=str(exc)[:500])
            if settings.log_rich_enabled:
                Console().print(Panel.fit(str(exc), title="Not ready", border_style="red"))
            return JSONResponse(
                {"status": "unavailable", "error": type(exc).__name__},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        return JSONResponse({"status": "ready"})

    prefix = settings.http.path.rstrip("/")

    @fastapi_app.post(f"{prefix}/route")
    async def route_message(request: Request) -> JSONResponse:
        svc = await _services(request)
        _context, sender = await _authenticated_agent(request, svc)
        body = await _json_body(request)
        if not isinstance(body, Mapping):
            raise AmpError(INVALID_REQUEST, "Request body must be a JSON object")
        result = await svc.routing.route(
            sender,
            body.get("to"),
            body.get("subject"),
            body.get("payload"),
            priority=body.get("priority"),
            in_reply_to=body.get("in_reply_to"),
        )
        return JSONResponse(result.to_dict())

    @fastapi_app.post(f"{prefix}/federation/deliver")
    async def federation_deliver(request: Request) -> JSONResponse:
        svc = await _services(request)
        provider = request.headers.get(PROVIDER_HEADER)
        if not (provider or "").strip():
            raise AmpError(MISSING_HEADER, f"{PROVIDER_HEADER} header is required")
        body = await _json_body(request)
        result = await svc.federation.receive(provider, body)
        return JSONResponse(result.to_dict())

    @fastapi_app.get(f"{prefix}/messages/pending")
    async def list_pending(request: Request) -> JSONResponse:
        svc = await _services(request)
        _context, agent = await _authenticated_agent(request, svc)
        limit = _parse_limit(request.query_params.get("limit"))
        key, entries = await svc.relay.pending_for([agent.id, agent.name], limit)
        remaining = 0
        if key is not None:
            remaining = max(0, await svc.relay.count(key) - len(entries))
        return JSONResponse(
            {
                "messages": [entry.to_wire() for entry in entries],
                "count": len(entries),
                "remaining": remaining,
            }
        )

    @fastapi_app.delete(f"{prefix}/messages/pending")
    async def acknowledge_pending(request: Request) -> JSONResponse:
        svc = await _services(request)
        _context, agent = await _authenticated_agent(request, svc)
        message_id = (request.query_params.get("id") or "").strip()
        if not message_id:
            raise missing_field("id")
        acknowledged = await svc.relay.acknowledge_for([agent.id, agent.name], message_id)
        return JSONResponse({"acknowledged": acknowledged})

    @fastapi_app.post(f"{prefix}/messages/pending/ack")
    async def acknowledge_pending_batch(request: Request) -> JSONResponse:
        svc = await _services(request)
        _context, agent = await _authenticated_agent(request, svc)
        body = await _json_body(request)
        ids = body.get("ids") if isinstance(body, Mapping) else None
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            raise invalid_field("ids", "ids must be an array of message id strings")
        if len(ids) > MAX_BATCH_ACK:
            raise AmpError(INVALID_REQUEST, f"Maximum {MAX_BATCH_ACK} message ids per batch acknowledgment", field="ids")
        acknowledged = await svc.relay.acknowledge_batch_for([agent.id, agent.name], ids)
        return JSONResponse({"acknowledged": acknowledged})

    @fastapi_app.post(f"{prefix}/agents/presence")
    async def update_presence(request: Request) -> JSONResponse:
        svc = await _services(request)
        _context, agent = await _authenticated_agent(request, svc)
        body = await _json_body(request)
        online = body.get("online") if isinstance(body, Mapping) else None
        if not isinstance(online, bool):
            raise invalid_field("online", "online must be a boolean")
        record = await svc.directory.set_presence(agent.id, online)
        return JSONResponse({"agent": record.to_dict()})

    @fastapi_app.post(f"{prefix}/hosts/register-peer")
    async def register_peer(request: Request) -> JSONResponse:
        svc = await _services(request)
        body = await _json_body(request)
        result = await svc.peers.register_peer(body)
        return JSONResponse(result.to_dict(), status_code=result.status_code)

    @fastapi_app.post(f"{prefix}/hosts/exchange-peers")
    async def exchange_peers(request: Request) -> JSONResponse:
        svc = await _services(request)
        body = await _json_body(request)
        result = await svc.peers.exchange_peers(body)
        return JSONResponse(result.to_dict(), status_code=result.status_code)

    @fastapi_app.get(f"{prefix}/hosts/identity")
    async def host_identity(request: Request) -> JSONResponse:
        svc = cast(AmpServices, request.app.state.services)
        identity = svc.peers.identity(
            forwarded_host=request.headers.get("x-forwarded-host"),
            forwarded_proto=request.headers.get("x-forwarded-proto"),
        )
        return JSONResponse({"host": identity})

    return fastapi_app


def main(argv: Optional[list[str]] = None) -> None:
    """``amp-relay-http``: serve the API with uvicorn, overriding the bind address from argv."""
    parser = argparse.ArgumentParser(prog="amp-relay-http", description="Serve the AMP relay API")
    parser.add_argument("--host", default=None, help="Bind address (default: HTTP_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: HTTP_PORT)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level")
    # Unknown flags are ignored so wrappers can pass their own options through
    args, _extra = parser.parse_known_args(argv)

    settings = get_settings()
    run_kwargs: dict[str, Any] = {
        "host": args.host or settings.http.host,
        "port": args.port or settings.http.port,
        "log_level": args.log_level,
    }
    # Websocket support is unused; disable it where this uvicorn version allows
    if "ws" in inspect.signature(uvicorn.run).parameters:
        run_kwargs["ws"] = "none"
    uvicorn.run(build_http_app(settings), **run_kwargs)


if __name__ == "__main__":  # pragma: no cover
    main()
