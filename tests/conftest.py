"""Shared pytest fixtures and fakes for the gateway test suite."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, List, Optional

import pytest

from ssh_gateway.config import ServerConfig
from ssh_gateway.errors import CommandTimeoutError, ValidationError


class FakeChannel:
    """Mimics the slice of paramiko.Channel the executor polls."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", exit_status: int = 0, duration: float = 0.0):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self._exit_status = exit_status
        self._finish_at = time.monotonic() + duration

    def _finished(self) -> bool:
        return time.monotonic() >= self._finish_at

    def recv_ready(self) -> bool:
        return self._finished() and bool(self._stdout)

    def recv(self, nbytes: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return self._finished() and bool(self._stderr)

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        return self._finished()

    def recv_exit_status(self) -> int:
        return self._exit_status


class FakeStream:
    def __init__(self, channel: FakeChannel):
        self.channel = channel


class FakeTransport:
    def __init__(self, client: "FakeSSHClient"):
        self.client = client

    def is_active(self) -> bool:
        return self.client.connected and not self.client.closed


class FakeSSHClient:
    """Stands in for paramiko.SSHClient; behaviours are keyed by command text."""

    def __init__(
        self,
        behaviours: Optional[Dict[str, dict]] = None,
        connect_error: Optional[Exception] = None,
        connect_delay: float = 0.0,
        abort: Optional[dict] = None,
    ):
        self.behaviours = behaviours or {}
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.abort = abort or {}
        self.commands: List[str] = []
        self.connect_kwargs: Optional[dict] = None
        self.host_key_policy = None
        self.loaded_system_host_keys = False
        self.connected = False
        self.closed = False
        self.closed_event = threading.Event()

    def load_system_host_keys(self) -> None:
        self.loaded_system_host_keys = True

    def set_missing_host_key_policy(self, policy) -> None:
        self.host_key_policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        if self.connect_delay:
            time.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def exec_command(self, command: str, timeout=None):
        self.commands.append(command)
        if command.startswith("timeout 3s pkill"):
            channel = FakeChannel(**self.abort)
        else:
            channel = FakeChannel(**self.behaviours.get(command, {}))
        return None, FakeStream(channel), FakeStream(channel)

    def get_transport(self):
        return FakeTransport(self) if self.connected else None

    def close(self) -> None:
        self.closed = True
        self.closed_event.set()


class FakeExecutor:
    """Executor double used by engine and transport tests."""

    def __init__(self, outputs: Optional[Dict[str, str]] = None, delay: float = 0.0):
        self.outputs = outputs or {}
        self.delay = delay
        self.calls: List[str] = []

    async def execute_async(self, command: str) -> str:
        self.calls.append(command)
        if not isinstance(command, str) or not command.strip():
            raise ValidationError("Command must be a non-empty string.")
        if self.delay:
            await asyncio.sleep(self.delay)
        if command == "hang":
            raise CommandTimeoutError("Command execution timed out after 1000ms", 1000)
        return self.outputs.get(command, f"ran {command}\n")


@pytest.fixture()
def config() -> ServerConfig:
    """Return a ServerConfig with test defaults (no preflight, short timeouts)."""
    return ServerConfig(
        ssh_host="10.0.0.5",
        ssh_user="deploy",
        ssh_password="s3cret",
        skip_preflight=True,
        command_timeout_ms=2000,
        abort_timeout_ms=500,
    )


@pytest.fixture()
def fake_executor() -> FakeExecutor:
    return FakeExecutor(outputs={"echo hello": "hello\n"})


def initialize_request(req_id: int = 1) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": req_id,
        "method": "initialize",
        "params": {
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "0"},
        },
    }


def exec_request(command: str, req_id: int = 2) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": req_id,
        "method": "tools/call",
        "params": {"name": "exec", "arguments": {"command": command}},
    }
