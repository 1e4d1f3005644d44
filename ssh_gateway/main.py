import sys
import os
import asyncio
import argparse
from typing import Any, Dict, List, Optional

import uvicorn

from ssh_gateway.app import create_app
from ssh_gateway.config import ServerConfig, load_config
from ssh_gateway.errors import ConfigurationError
from ssh_gateway.utils import configure_logging, log, to_bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP gateway (SSE or Streamable HTTP transport, one SSH connection per exec)"
    )
    parser.add_argument("--transport", help="sse | stream (default: stream)")
    parser.add_argument("--listen-host", "--listenHost", dest="listen_host", help="HTTP listen host (default: 127.0.0.1)")
    parser.add_argument(
        "--listen-port", "--listenPort", "--httpPort", dest="listen_port", help="HTTP listen port (default: 3001)"
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--ssh-port", "--sshPort", dest="ssh_port", help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--port", dest="legacy_port", help="Legacy alias for --ssh-port")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host key against system known_hosts")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--timeout", help="Command timeout in ms (default: 60000)")
    parser.add_argument("--max-session-age-ms", dest="max_session_age_ms", help="Idle session max age in ms")
    parser.add_argument("--keepalive-interval-ms", dest="keepalive_interval_ms", help="SSE ping interval in ms")
    parser.add_argument("--auth-token", dest="auth_token", help="Require 'Authorization: Bearer <token>'")
    parser.add_argument("--allowed-origins", dest="allowed_origins", help="Comma separated CORS origins (default: *)")
    parser.add_argument(
        "--strict-security", "--strictSecurity", dest="strict_security", nargs="?", const="true",
        help="Enable Host header allow-list (DNS rebinding protection)",
    )
    parser.add_argument("--local-exec", dest="local_exec", action="store_true", default=None,
                        help="Run commands on this host instead of over SSH (diagnostic)")
    parser.add_argument("--skip-preflight", dest="skip_preflight", action="store_true", default=None,
                        help="Skip the TCP reachability check before each SSH connection")
    parser.add_argument("--allow-command-regex", dest="allow_command_regex",
                        help="Only run commands that fully match this regex")
    return parser


def parse_config(argv: Optional[List[str]] = None, environ: Optional[Dict[str, str]] = None) -> ServerConfig:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.ssh_port is None and args.legacy_port is not None:
        args.ssh_port = args.legacy_port
    try:
        return load_config(args, environ)
    except ConfigurationError as exc:
        parser.error(exc.message)


async def _serve(server: uvicorn.Server, failures: List[Any]) -> None:
    def on_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        log("error", "Unhandled async exception", message=context.get("message"), error=str(exc) if exc else None)
        failures.append(exc or context.get("message"))
        server.should_exit = True

    asyncio.get_running_loop().set_exception_handler(on_exception)
    await server.serve()


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(os.environ.get("LOG_LEVEL", "info"), to_bool(os.environ.get("MCP_LOG_JSON")))
    config = parse_config(argv)

    app = create_app(config)
    path = "/sse" if config.transport == "sse" else "/mcp"
    log(
        "info",
        f"Listening ({'SSE' if config.transport == 'sse' else 'HTTP Stream'})",
        url=f"http://{config.listen_host}:{config.listen_port}{path}",
        target=f"{config.ssh_host}:{config.ssh_port}",
        verifyHost=config.verify_host_key,
    )
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.listen_host, port=config.listen_port, log_level="warning")
    )
    failures: List[Any] = []
    try:
        asyncio.run(_serve(server, failures))
    except KeyboardInterrupt:
        log("info", "shutting down...")
    except Exception as exc:
        log("error", "Fatal error in main()", error=str(exc), type=exc.__class__.__name__)
        sys.exit(1)
    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
