"""Tests for the remote and local command executors."""

from __future__ import annotations

import asyncio
import dataclasses
import sys
import threading
import time
from unittest.mock import MagicMock

import paramiko
import pytest

from conftest import FakeSSHClient, exec_request
from ssh_gateway.errors import (
    AuthenticationError, CommandTimeoutError, ReachabilityError, RemoteConnectionError,
    RemoteExecutionError, ValidationError,
)
from ssh_gateway.preflight import PreflightResult
from ssh_gateway.server import McpEngine
from ssh_gateway.ssh import (
    DONE, SUCCESS, TIMEOUT, CommandInvocation, LocalExecutor, RegexCommandPolicy, RemoteExecutor,
    build_abort_command, build_executor,
)


def make_executor(config, client, **kwargs) -> RemoteExecutor:
    return RemoteExecutor(config, client_factory=lambda: client, **kwargs)


def test_exec_returns_stdout(config):
    client = FakeSSHClient({"echo hello": {"stdout": b"hello\n"}})
    executor = make_executor(config, client)

    assert executor.execute("echo hello") == "hello\n"
    assert client.commands == ["echo hello"]
    assert client.closed


def test_command_is_passed_through_unmodified(config):
    command = "cat /etc/hosts | grep -v '^#' && echo \"$HOME\""
    client = FakeSSHClient({command: {"stdout": b"ok"}})

    assert make_executor(config, client).execute(command) == "ok"
    assert client.commands == [command]


@pytest.mark.parametrize("command", ["", "   ", "\n\t", None])
def test_blank_command_rejected_before_connecting(config, command):
    factory = MagicMock()
    prober = MagicMock()
    executor = RemoteExecutor(dataclasses.replace(config, skip_preflight=False), client_factory=factory, prober=prober)

    with pytest.raises(ValidationError, match="non-empty"):
        executor.execute(command)
    factory.assert_not_called()
    prober.assert_not_called()


def test_stderr_is_failure_even_with_zero_exit(config):
    client = FakeSSHClient({"warn": {"stdout": b"partial", "stderr": b"oops\n", "exit_status": 0}})

    with pytest.raises(RemoteExecutionError) as excinfo:
        make_executor(config, client).execute("warn")
    assert excinfo.value.exit_code == 0
    assert excinfo.value.stderr == "oops\n"
    assert excinfo.value.message == "Error (code 0):\noops\n"
    assert client.closed


def test_nonzero_exit_without_stderr_is_success(config):
    client = FakeSSHClient({"false": {"exit_status": 1}})

    assert make_executor(config, client).execute("false") == ""


def test_key_takes_precedence_over_password(config):
    keyed = dataclasses.replace(config, ssh_key_path="/keys/id_ed25519", ssh_key_passphrase="pp")
    client = FakeSSHClient({"id": {"stdout": b"uid=0"}})

    make_executor(keyed, client).execute("id")
    assert client.connect_kwargs["key_filename"] == "/keys/id_ed25519"
    assert client.connect_kwargs["passphrase"] == "pp"
    assert "password" not in client.connect_kwargs
    assert client.connect_kwargs["hostname"] == "10.0.0.5"
    assert client.connect_kwargs["username"] == "deploy"


def test_password_auth_and_host_key_policy(config):
    client = FakeSSHClient({"id": {}})
    make_executor(dataclasses.replace(config, verify_host_key=False), client).execute("id")
    assert client.connect_kwargs["password"] == "s3cret"
    assert isinstance(client.host_key_policy, paramiko.AutoAddPolicy)
    assert not client.loaded_system_host_keys

    strict_client = FakeSSHClient({"id": {}})
    make_executor(config, strict_client).execute("id")
    assert strict_client.loaded_system_host_keys


def test_authentication_failure(config):
    client = FakeSSHClient(connect_error=paramiko.AuthenticationException("Authentication failed."))

    with pytest.raises(AuthenticationError, match="Authentication failed"):
        make_executor(config, client).execute("id")
    assert client.closed


def test_network_failure_is_connection_error(config):
    client = FakeSSHClient(connect_error=OSError("No route to host"))

    with pytest.raises(RemoteConnectionError, match="SSH connection error: No route to host"):
        make_executor(config, client).execute("id")


def test_unreachable_target_skips_handshake(config):
    factory = MagicMock()
    prober = MagicMock(return_value=PreflightResult(ok=False, reason="connection refused"))
    executor = RemoteExecutor(
        dataclasses.replace(config, skip_preflight=False, ssh_port=22), client_factory=factory, prober=prober
    )

    with pytest.raises(ReachabilityError) as excinfo:
        executor.execute("uptime")
    assert "refused" in excinfo.value.message
    assert "--ssh-port=2222" in excinfo.value.message
    assert excinfo.value.reason == "connection refused"
    prober.assert_called_once_with("10.0.0.5", 22, 3000)
    factory.assert_not_called()


def test_unreachable_on_custom_port_has_no_docker_hint(config):
    prober = MagicMock(return_value=PreflightResult(ok=False, reason="timeout"))
    executor = RemoteExecutor(
        dataclasses.replace(config, skip_preflight=False, ssh_port=2200), client_factory=MagicMock(), prober=prober
    )

    with pytest.raises(ReachabilityError) as excinfo:
        executor.execute("uptime")
    assert "SSH port check failed (timeout)" in excinfo.value.message
    assert "2222" not in excinfo.value.message


def test_timeout_returns_promptly_and_aborts_remote(config):
    short = dataclasses.replace(config, command_timeout_ms=200)
    client = FakeSSHClient({"sleep 5": {"stdout": b"late", "duration": 5.0}})
    executor = make_executor(short, client)

    started = time.monotonic()
    with pytest.raises(CommandTimeoutError, match="timed out after 200ms"):
        executor.execute("sleep 5")
    elapsed = time.monotonic() - started

    assert elapsed < 1.5
    assert client.closed_event.wait(2.0)
    assert client.commands[0] == "sleep 5"
    assert client.commands[1] == build_abort_command("sleep 5")


def test_timeout_does_not_wait_for_a_hanging_abort(config):
    short = dataclasses.replace(config, command_timeout_ms=150, abort_timeout_ms=200)
    client = FakeSSHClient({"sleep 5": {"duration": 5.0}}, abort={"duration": 30.0})
    executor = make_executor(short, client)

    started = time.monotonic()
    with pytest.raises(CommandTimeoutError):
        executor.execute("sleep 5")
    assert time.monotonic() - started < 1.0
    # abort gives up after its own bound and force-closes the connection
    assert client.closed_event.wait(2.0)


def test_timeout_during_handshake(config):
    short = dataclasses.replace(config, command_timeout_ms=100)
    client = FakeSSHClient({"id": {}}, connect_delay=0.5)

    with pytest.raises(CommandTimeoutError):
        make_executor(short, client).execute("id")
    assert client.closed_event.wait(2.0)
    time.sleep(0.6)
    assert client.commands == []


def test_concurrent_invocations_settle_independently(config):
    def factory():
        return FakeSSHClient({"slow-a": {"stdout": b"a", "duration": 0.3}, "slow-b": {"stdout": b"b", "duration": 0.3}})

    executor = RemoteExecutor(config, client_factory=factory)
    results = {}

    def run(command):
        results[command] = executor.execute(command)

    threads = [threading.Thread(target=run, args=(c,)) for c in ("slow-a", "slow-b")]
    started = time.monotonic()
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert results == {"slow-a": "a", "slow-b": "b"}
    assert time.monotonic() - started < 0.55


def test_invocation_settles_exactly_once():
    invocation = CommandInvocation(command="ls", timeout_ms=1000)

    assert invocation.settle(TIMEOUT, error=CommandTimeoutError("timed out", 1000))
    assert not invocation.settle(SUCCESS, output="late output")
    assert invocation.outcome == TIMEOUT
    assert invocation.state == DONE
    assert invocation.done_event.is_set()
    with pytest.raises(CommandTimeoutError):
        invocation.result()


def test_abort_command_quotes_the_pattern():
    assert build_abort_command("sleep 100") == "timeout 3s pkill -f -- 'sleep 100' 2>/dev/null || true"
    assert build_abort_command("echo 'x'; rm -rf /tmp/y") == (
        "timeout 3s pkill -f -- 'echo '\"'\"'x'\"'\"'; rm -rf /tmp/y' 2>/dev/null || true"
    )


def test_regex_policy_rejects_unlisted_commands(config):
    client = FakeSSHClient({"uptime": {"stdout": b"up"}})
    executor = make_executor(config, client, policy=RegexCommandPolicy(r"(uptime|df -h)"))

    assert executor.execute("uptime") == "up"
    with pytest.raises(ValidationError, match="command policy"):
        executor.execute("rm -rf /")
    assert client.commands == ["uptime"]


def test_build_executor_picks_local_fallback(config):
    assert isinstance(build_executor(config), RemoteExecutor)
    assert isinstance(build_executor(dataclasses.replace(config, local_exec=True)), LocalExecutor)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestLocalExecutor:
    def test_returns_stdout(self, config):
        assert LocalExecutor(config).execute("echo hello") == "hello\n"

    def test_failure_reports_stderr(self, config):
        with pytest.raises(RemoteExecutionError, match="Local exec failed: boom"):
            LocalExecutor(config).execute("echo boom >&2; exit 3")

    def test_timeout(self, config):
        executor = LocalExecutor(dataclasses.replace(config, command_timeout_ms=200))
        with pytest.raises(CommandTimeoutError):
            executor.execute("sleep 5")

    def test_blank_command(self, config):
        with pytest.raises(ValidationError):
            LocalExecutor(config).execute(" ")


@pytest.mark.asyncio
async def test_execute_async_returns_stdout(config):
    client = FakeSSHClient({"echo hello": {"stdout": b"hello\n"}})

    assert await make_executor(config, client).execute_async("echo hello") == "hello\n"
    assert client.closed


@pytest.mark.asyncio
async def test_timeouts_hold_with_more_sessions_than_pool_threads(config):
    short = dataclasses.replace(config, command_timeout_ms=300, abort_timeout_ms=100)
    executor = RemoteExecutor(short, client_factory=lambda: FakeSSHClient({"sleep 9": {"duration": 9.0}}))
    engines = [McpEngine(short, executor, "stream") for _ in range(12)]

    async def timed(engine):
        started = time.monotonic()
        response = await engine.handle(exec_request("sleep 9"))
        return time.monotonic() - started, response

    results = await asyncio.gather(*(timed(engine) for engine in engines))

    assert all(response["error"]["data"]["kind"] == "timeout" for _, response in results)
    assert max(elapsed for elapsed, _ in results) < 0.8


@pytest.mark.asyncio
async def test_execute_async_reports_unreachable_target(config):
    prober = MagicMock(return_value=PreflightResult(ok=False, reason="timeout"))
    factory = MagicMock()
    executor = RemoteExecutor(dataclasses.replace(config, skip_preflight=False), client_factory=factory, prober=prober)

    with pytest.raises(ReachabilityError, match="SSH port check failed"):
        await executor.execute_async("uptime")
    factory.assert_not_called()


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestLocalExecutorAsync:
    @pytest.mark.asyncio
    async def test_returns_stdout(self, config):
        assert await LocalExecutor(config).execute_async("echo hello") == "hello\n"

    @pytest.mark.asyncio
    async def test_failure_reports_stderr(self, config):
        with pytest.raises(RemoteExecutionError, match="Local exec failed: boom"):
            await LocalExecutor(config).execute_async("echo boom >&2; exit 3")

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        executor = LocalExecutor(dataclasses.replace(config, command_timeout_ms=200))
        started = time.monotonic()
        with pytest.raises(CommandTimeoutError):
            await executor.execute_async("sleep 5")
        assert time.monotonic() - started < 2.0
