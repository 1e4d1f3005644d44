import asyncio
import hmac
import json
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ssh_gateway.channel import ChannelClosed, EventChannel
from ssh_gateway.config import SESSION_HEADER, ServerConfig
from ssh_gateway.errors import ProtocolError
from ssh_gateway.keepalive import release_session, start_keepalive
from ssh_gateway.registry import CLOSED, CLOSED_BY_PEER, REAPED, Session, SessionRegistry, new_session_id
from ssh_gateway.server import McpEngine, is_initialize_request
from ssh_gateway.utils import log, preview, should_log

EngineFactory = Callable[[Optional[str]], McpEngine]

SSE_HEADERS = {"X-Accel-Buffering": "no", "Cache-Control": "no-cache", "Connection": "keep-alive"}


class RequestRejected(Exception):
    """Request refused at the transport layer with an HTTP status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


def rejection_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, RequestRejected):
        return JSONResponse({"error": exc.message}, status_code=exc.status)
    return JSONResponse({"error": str(exc)}, status_code=400)


async def read_json(request: Request) -> Any:
    body = await request.body()
    if not body.strip():
        raise ProtocolError("Empty request body; expected JSON-RPC message.")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Parse error: {exc}") from None


def bearer_guard(config: ServerConfig) -> Callable:
    async def guard(request: Request) -> None:
        if not config.auth_token:
            return
        expected = f"Bearer {config.auth_token}".encode("utf-8")
        # starlette decodes header values as latin-1; recover the raw bytes
        supplied = request.headers.get("authorization", "").encode("latin-1")
        if not hmac.compare_digest(supplied, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    return guard


class TransportAdapter:
    """Correlates inbound requests to sessions and bridges them to a McpEngine."""

    name = ""

    def __init__(self, config: ServerConfig, registry: SessionRegistry, engine_factory: EngineFactory):
        self.config = config
        self.registry = registry
        self.engine_factory = engine_factory

    def register(self, session: Session) -> Session:
        self.registry.create(session.id, session)
        log("info", "Session started", sessionId=session.id, transport=self.name)
        return session

    def lookup(self, session_id: Optional[str], missing_status: int = 400) -> Session:
        if not session_id:
            raise RequestRejected(missing_status, "Missing sessionId")
        session = self.registry.get(session_id)
        if session is None:
            raise RequestRejected(404, "Unknown sessionId")
        return session

    def close_session(self, session_id: str, state: str) -> Optional[Session]:
        session = self.registry.remove(session_id)
        if session is None:
            return None
        release_session(session, state)
        log("info", "Session closed", sessionId=session_id, state=state, messages=session.message_count)
        return session

    def expire(self, session: Session) -> None:
        self.close_session(session.id, REAPED)

    def close_all(self) -> None:
        for session_id in list(self.registry):
            self.close_session(session_id, CLOSED)

    def validate_payload(self, payload: Any) -> None:
        if isinstance(payload, dict) and not payload:
            log("warn", "Rejecting empty JSON object (expected JSON-RPC initialize)")
            raise ProtocolError("Empty JSON object received; expected JSON-RPC initialize request.")
        if isinstance(payload, list):
            if not payload:
                raise ProtocolError("Empty JSON-RPC batch received.")
            return
        if not isinstance(payload, dict):
            raise ProtocolError("Invalid Request: expected a JSON-RPC object or batch.")

    def record_message(self, session: Session, payload: Any) -> None:
        self.registry.touch(session.id)
        session.message_count += 1
        method = payload.get("method", "unknown") if isinstance(payload, dict) else "batch"
        if should_log("debug"):
            log("debug", "Incoming message", sessionId=session.id, messageCount=session.message_count, method=method)
        if self.config.log_rpc_bodies:
            log("trace", "RPC body", sessionId=session.id, bodyPreview=preview(json.dumps(payload), 1000))

    def open_channel(self, session: Session) -> EventChannel:
        session.channel = EventChannel()
        start_keepalive(session, self.config.keepalive_interval_ms)
        return session.channel

    async def stream(self, session: Session, first: Optional[Dict[str, str]] = None) -> AsyncIterator[Dict[str, str]]:
        """Yield the session's channel events; the session ends with the stream."""
        try:
            async for event in session.channel.events(first):
                yield event
        finally:
            if self.registry.get(session.id) is session:
                self.close_session(session.id, CLOSED_BY_PEER)

    def router(self) -> APIRouter:
        raise NotImplementedError


class SseTransport(TransportAdapter):
    """Dual endpoint: GET /sse subscribes, POST /messages?sessionId=... sends."""

    name = "sse"
    messages_path = "/messages"

    def open_session(self) -> Session:
        session_id = new_session_id()
        session = Session(id=session_id, engine=self.engine_factory(session_id))
        self.open_channel(session)
        return self.register(session)

    def endpoint_event(self, session: Session) -> Dict[str, str]:
        return {"event": "endpoint", "data": f"{self.messages_path}?sessionId={session.id}"}

    def post_message(self, session: Session, payload: Any) -> asyncio.Task:
        self.validate_payload(payload)
        self.record_message(session, payload)
        task = asyncio.create_task(self._dispatch(session, payload))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def _dispatch(self, session: Session, payload: Any) -> None:
        response = await session.engine.handle(payload)
        if response is None:
            return
        try:
            session.channel.send_message(response)
        except ChannelClosed:
            log("warn", "Dropping response for closed session", sessionId=session.id)

    def router(self) -> APIRouter:
        router = APIRouter(dependencies=[Depends(bearer_guard(self.config))])

        @router.get("/sse")
        async def subscribe() -> EventSourceResponse:
            session = self.open_session()
            return EventSourceResponse(self.stream(session, self.endpoint_event(session)), headers=SSE_HEADERS)

        @router.post(self.messages_path)
        async def messages(request: Request) -> Response:
            session_id = request.query_params.get("sessionId") or request.query_params.get("session_id")
            try:
                session = self.lookup(session_id)
                payload = await read_json(request)
                self.post_message(session, payload)
            except (RequestRejected, ProtocolError) as exc:
                return rejection_response(exc)
            return Response("Accepted", status_code=202)

        return router


class StreamableHttpTransport(TransportAdapter):
    """Single endpoint /mcp, correlated by the Mcp-Session-Id header."""

    name = "stream"
    path = "/mcp"

    def check_host(self, host: Optional[str]) -> None:
        if not self.config.strict_security:
            return
        if host not in self.config.allowed_hosts:
            log("warn", "Rejected request with disallowed Host header", host=host)
            raise HTTPException(status_code=403, detail="Invalid Host header")

    def find(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise RequestRejected(404, "Session not found")
        return session

    async def handle_post(self, session_id: Optional[str], payload: Any) -> Tuple[Optional[str], Any]:
        """Dispatch one POST body. Returns (session id, JSON-RPC response or None)."""
        self.validate_payload(payload)
        if session_id:
            session = self.find(session_id)
            self.record_message(session, payload)
            return session.id, await session.engine.handle(payload)

        if not is_initialize_request(payload):
            raise RequestRejected(400, "Bad Request: No valid session ID provided")
        engine = self.engine_factory(None)
        response = await engine.handle(payload)
        if not engine.initialized or engine.session_id is None:
            return None, response
        session = self.register(Session(id=engine.session_id, engine=engine))
        self.record_message(session, payload)
        return session.id, response

    def open_stream(self, session_id: Optional[str]) -> Session:
        if not session_id:
            raise RequestRejected(400, "Bad Request: No valid session ID provided")
        session = self.find(session_id)
        if session.channel is not None and not session.channel.closed:
            raise RequestRejected(409, "Conflict: Only one SSE stream is allowed per session")
        self.open_channel(session)
        self.registry.touch(session.id)
        return session

    def terminate(self, session_id: Optional[str]) -> None:
        if not session_id:
            raise RequestRejected(400, "Bad Request: No valid session ID provided")
        self.find(session_id)
        self.close_session(session_id, CLOSED)

    def router(self) -> APIRouter:
        async def host_guard(request: Request) -> None:
            self.check_host(request.headers.get("host"))

        router = APIRouter(dependencies=[Depends(bearer_guard(self.config)), Depends(host_guard)])

        @router.post(self.path)
        async def post(request: Request) -> Response:
            try:
                payload = await read_json(request)
                session_id, response = await self.handle_post(request.headers.get(SESSION_HEADER), payload)
            except (RequestRejected, ProtocolError) as exc:
                return rejection_response(exc)
            headers = {SESSION_HEADER: session_id} if session_id else None
            if response is None:
                return Response(status_code=202, headers=headers)
            return JSONResponse(response, headers=headers)

        @router.get(self.path)
        async def subscribe(request: Request) -> Response:
            try:
                session = self.open_stream(request.headers.get(SESSION_HEADER))
            except RequestRejected as exc:
                return rejection_response(exc)
            headers = dict(SSE_HEADERS, **{SESSION_HEADER: session.id})
            return EventSourceResponse(self.stream(session), headers=headers)

        @router.delete(self.path)
        async def delete(request: Request) -> Response:
            try:
                self.terminate(request.headers.get(SESSION_HEADER))
            except RequestRejected as exc:
                return rejection_response(exc)
            return Response(status_code=200)

        return router


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log("error", "Message dispatch failed", error=str(exc), type=exc.__class__.__name__)


def build_transport(config: ServerConfig, registry: SessionRegistry, engine_factory: EngineFactory) -> TransportAdapter:
    if config.transport == "sse":
        return SseTransport(config, registry, engine_factory)
    return StreamableHttpTransport(config, registry, engine_factory)
