import json
import time
from typing import Any, Dict, List, Optional, Union

from ssh_gateway.config import SERVER_NAME, SERVER_VERSION, SUPPORTED_PROTOCOL_VERSION, ServerConfig
from ssh_gateway.errors import (
    INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, GatewayError,
)
from ssh_gateway.registry import new_session_id
from ssh_gateway.utils import iso_now, log, preview

Message = Dict[str, Any]


def format_tool_result(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def make_response(req_id: Any, result: Dict[str, Any]) -> Message:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(req_id: Any, code: int, message: str, data: Optional[Dict[str, Any]] = None) -> Message:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": req_id, "error": error}


def is_initialize_request(payload: Any) -> bool:
    if isinstance(payload, list):
        return any(is_initialize_request(item) for item in payload)
    return isinstance(payload, dict) and payload.get("method") == "initialize"


def tools_list() -> List[Dict[str, Any]]:
    return [
        {
            "name": "exec",
            "description": "Execute a shell command on the remote SSH server and return the output.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to execute on the remote SSH server"},
                },
                "required": ["command"],
            },
        },
        {
            "name": "server_info",
            "description": "Return diagnostic information about the server.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]


class McpEngine:
    """JSON-RPC engine for one session: MCP handshake plus the exec/server_info tools."""

    def __init__(self, config: ServerConfig, executor: Any, transport_name: str, session_id: Optional[str] = None):
        self.config = config
        self.executor = executor
        self.transport_name = transport_name
        self.session_id = session_id
        self.initialized = False
        self.protocol_version: Optional[str] = None
        self.client_info: Dict[str, Any] = {}
        self.closed = False

    def close(self) -> None:
        self.closed = True

    async def handle(self, payload: Union[Message, List[Message]]) -> Optional[Union[Message, List[Message]]]:
        if isinstance(payload, list):
            responses = []
            for message in payload:
                response = await self.handle_message(message)
                if response is not None:
                    responses.append(response)
            return responses or None
        return await self.handle_message(payload)

    async def handle_message(self, request: Any) -> Optional[Message]:
        if not isinstance(request, dict):
            return make_error(None, INVALID_REQUEST, "Invalid Request: expected a JSON object")
        try:
            return await self._dispatch(request)
        except Exception as exc:
            log("error", "Request handling failed", method=request.get("method"), error=str(exc),
                type=exc.__class__.__name__)
            if "id" not in request:
                return None
            return make_error(request.get("id"), INTERNAL_ERROR, f"Internal error: {exc}")

    async def _dispatch(self, request: Message) -> Optional[Message]:
        method = request.get("method")
        req_id = request.get("id")
        is_notification = "id" not in request

        if method is None:
            # a client response to a server request; nothing to answer
            return None

        params = request.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict) and not is_notification:
            return make_error(req_id, INVALID_PARAMS, "Invalid params: expected an object")

        if method == "initialize":
            return self._initialize(req_id, params)
        if method == "notifications/initialized":
            log("debug", "Client initialized", sessionId=self.session_id)
            return None
        if is_notification:
            log("debug", "Ignoring notification", method=method, sessionId=self.session_id)
            return None
        if method == "ping":
            return make_response(req_id, {})
        if method == "tools/list":
            return make_response(req_id, {"tools": tools_list()})
        if method == "resources/list":
            return make_response(req_id, {"resources": []})
        if method == "tools/call":
            arguments = params.get("arguments")
            if arguments is None:
                arguments = {}
            if not isinstance(arguments, dict):
                return make_error(req_id, INVALID_PARAMS, "Invalid params: arguments must be an object")
            return await self._call_tool(req_id, params.get("name"), arguments)
        return make_error(req_id, METHOD_NOT_FOUND, f"Unknown method: {method}")

    def _initialize(self, req_id: Any, params: Dict[str, Any]) -> Message:
        if self.initialized:
            return make_error(req_id, INVALID_REQUEST, "Invalid Request: Server already initialized")
        if self.session_id is None:
            self.session_id = new_session_id()
        self.initialized = True
        self.client_info = params.get("clientInfo") or {}
        client_version = params.get("protocolVersion")
        self.protocol_version = client_version
        if client_version and client_version != SUPPORTED_PROTOCOL_VERSION:
            log("warn", "Protocol version mismatch", clientVersion=client_version, supported=SUPPORTED_PROTOCOL_VERSION)
        else:
            log("info", "Initialized", protocolVersion=client_version or "UNKNOWN", sessionId=self.session_id)
        return make_response(
            req_id,
            {
                "protocolVersion": SUPPORTED_PROTOCOL_VERSION,
                "capabilities": {"tools": {}, "resources": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        )

    async def _call_tool(self, req_id: Any, tool_name: Any, args: Dict[str, Any]) -> Message:
        if tool_name == "exec":
            return await self._exec(req_id, args.get("command"))
        if tool_name == "server_info":
            return make_response(req_id, format_tool_result(json.dumps(self.server_info(), indent=2)))
        return make_error(req_id, METHOD_NOT_FOUND, f"Unknown tool: {tool_name}")

    async def _exec(self, req_id: Any, command: Any) -> Message:
        start = time.monotonic()
        log("debug", "Tool exec start", command=preview(str(command)), sessionId=self.session_id)
        try:
            output = await self.executor.execute_async(command)
        except GatewayError as exc:
            ms = round((time.monotonic() - start) * 1000)
            log("error", "Tool exec error", ms=ms, kind=exc.kind, error=exc.message)
            return make_error(req_id, exc.code, exc.message, exc.details())
        except Exception as exc:
            log("error", "Tool exec error", error=str(exc))
            return make_error(req_id, INTERNAL_ERROR, f"Unexpected error: {exc}")
        if self.config.log_timing:
            ms = round((time.monotonic() - start) * 1000)
            log("debug", "Tool exec complete", ms=ms, commandLength=len(command))
        return make_response(req_id, format_tool_result(output))

    def server_info(self) -> Dict[str, Any]:
        return {
            "transport": self.transport_name,
            "host": self.config.ssh_host,
            "sshPort": self.config.ssh_port,
            "protocolSupported": SUPPORTED_PROTOCOL_VERSION,
            "now": iso_now(),
        }
