import socket
from dataclasses import dataclass
from typing import Optional

from ssh_gateway.utils import log


@dataclass(frozen=True)
class PreflightResult:
    ok: bool
    reason: Optional[str] = None


def probe(host: str, port: int, timeout_ms: int) -> PreflightResult:
    """Check that host:port accepts a TCP connection within timeout_ms.

    Always returns a result; socket errors are folded into ``reason``.
    """
    sock = None
    try:
        sock = socket.create_connection((host, port), timeout=timeout_ms / 1000.0)
        return PreflightResult(ok=True)
    except socket.timeout:
        return PreflightResult(ok=False, reason="timeout")
    except ConnectionRefusedError:
        return PreflightResult(ok=False, reason="connection refused")
    except OSError as exc:
        return PreflightResult(ok=False, reason=str(exc) or exc.__class__.__name__)
    finally:
        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                log("debug", "preflight socket close failed", error=str(exc))


def unreachable_message(host: str, port: int, reason: Optional[str]) -> str:
    message = f"SSH port check failed ({reason}). "
    if reason and "refused" in reason and port == 22:
        message += "If using Docker, try --ssh-port=2222 (common Docker SSH mapping). "
    message += f"Ensure an SSH server is listening on {host}:{port} or set MCP_LOCAL_EXEC=1 for local commands."
    return message
