from typing import Any, Dict, Optional

# JSON-RPC 2.0 error codes
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
PARSE_ERROR = -32700


class GatewayError(Exception):
    """Base exception for every error the gateway reports to a client."""

    kind = "internal"
    code = INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_rpc_error(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.details()}

    def details(self) -> Dict[str, Any]:
        return {"kind": self.kind}


class ConfigurationError(GatewayError):
    """Invalid or missing startup parameters."""

    kind = "configuration"


class ValidationError(GatewayError):
    kind = "validation"
    code = INVALID_PARAMS


class ReachabilityError(GatewayError):
    """Target host:port did not accept a TCP connection."""

    kind = "unreachable"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason}


class AuthenticationError(GatewayError):
    kind = "authentication"


class RemoteConnectionError(GatewayError):
    kind = "connection"


class RemoteExecutionError(GatewayError):
    """Remote command wrote to stderr or exited abnormally."""

    kind = "remote_execution"

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr

    def details(self) -> Dict[str, Any]:
        return {"kind": self.kind, "exitCode": self.exit_code, "stderr": self.stderr}


class CommandTimeoutError(GatewayError):
    kind = "timeout"

    def __init__(self, message: str, timeout_ms: int):
        super().__init__(message)
        self.timeout_ms = timeout_ms

    def details(self) -> Dict[str, Any]:
        return {"kind": self.kind, "timeoutMs": self.timeout_ms}


class ProtocolError(GatewayError):
    """Malformed or empty payload where a JSON-RPC request was expected."""

    kind = "protocol"
    code = INVALID_REQUEST
