"""FastAPI application factory for the gateway."""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ssh_gateway.config import SESSION_HEADER, SUPPORTED_PROTOCOL_VERSION, ServerConfig
from ssh_gateway.keepalive import Reaper
from ssh_gateway.registry import SessionRegistry
from ssh_gateway.server import McpEngine
from ssh_gateway.ssh import build_executor
from ssh_gateway.transports import build_transport
from ssh_gateway.utils import log

PROCESS_STARTED = time.monotonic()


def setup_cors(app: FastAPI, config: ServerConfig) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.allowed_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", SESSION_HEADER, "Authorization"],
        expose_headers=[SESSION_HEADER],
    )


def create_app(
    config: ServerConfig,
    executor: Any = None,
    registry: Optional[SessionRegistry] = None,
) -> FastAPI:
    """Wire registry, transport adapter, reaper and health endpoint into one app."""
    registry = registry if registry is not None else SessionRegistry()
    executor = executor if executor is not None else build_executor(config)

    def engine_factory(session_id: Optional[str]) -> McpEngine:
        return McpEngine(config, executor, config.transport, session_id)

    transport = build_transport(config, registry, engine_factory)
    reaper = Reaper(registry, config.max_session_age_ms, config.reaper_interval_ms, transport.expire)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        reaper.start()
        log(
            "info", "Security mode",
            dnsRebindingProtection=config.strict_security,
            authRequired=bool(config.auth_token),
            localExec=config.local_exec,
        )
        try:
            yield
        finally:
            await reaper.stop()
            transport.close_all()
            log("info", "Gateway stopped")

    app = FastAPI(title="SSH MCP Gateway", lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.transport = transport
    app.state.reaper = reaper
    setup_cors(app, config)
    app.include_router(transport.router())

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "transport": transport.name,
            "sessions": len(registry),
            "protocol": SUPPORTED_PROTOCOL_VERSION,
            "uptimeSec": round(time.monotonic() - PROCESS_STARTED),
        }

    return app
