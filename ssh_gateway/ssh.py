import asyncio
import re
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import paramiko

from ssh_gateway.config import BUFFER_SIZE, CONNECT_TIMEOUT, POLL_INTERVAL, ServerConfig
from ssh_gateway.errors import (
    AuthenticationError, CommandTimeoutError, GatewayError, ReachabilityError,
    RemoteConnectionError, RemoteExecutionError, ValidationError,
)
from ssh_gateway.preflight import PreflightResult, probe, unreachable_message
from ssh_gateway.utils import log, preview

# Invocation states
CONNECTING = "connecting"
EXECUTING = "executing"
SETTLING = "settling"
DONE = "done"

# Outcomes
SUCCESS = "success"
ERROR = "error"
TIMEOUT = "timeout"


class CommandPolicy:
    """Hook deciding whether a command may be sent to the remote shell.

    The base policy allows everything; commands are never rewritten.
    """

    def check(self, command: str) -> None:
        return None


class RegexCommandPolicy(CommandPolicy):
    def __init__(self, pattern: str):
        self.pattern = re.compile(pattern)

    def check(self, command: str) -> None:
        if not self.pattern.fullmatch(command.strip()):
            raise ValidationError("Command rejected by the configured command policy.")


def build_policy(config: ServerConfig) -> CommandPolicy:
    if config.allowed_command_regex:
        return RegexCommandPolicy(config.allowed_command_regex)
    return CommandPolicy()


def validate_command(command: Any, policy: Optional[CommandPolicy] = None) -> str:
    if not isinstance(command, str) or not command.strip():
        raise ValidationError("Command must be a non-empty string.")
    if policy is not None:
        policy.check(command)
    return command


def build_abort_command(command: str) -> str:
    return f"timeout 3s pkill -f -- {shlex.quote(command)} 2>/dev/null || true"


@dataclass
class CommandInvocation:
    command: str
    timeout_ms: int
    started_at: float = field(default_factory=time.monotonic)
    state: str = CONNECTING
    outcome: Optional[str] = None
    output: str = ""
    error: Optional[GatewayError] = None
    exit_status: Optional[int] = None
    stdout_chunks: List[bytes] = field(default_factory=list)
    stderr_chunks: List[bytes] = field(default_factory=list)
    client: Any = None
    timer: Optional[threading.Timer] = None
    on_settled: Optional[Callable[[], None]] = None

    lock: threading.Lock = field(default_factory=threading.Lock)
    done_event: threading.Event = field(default_factory=threading.Event)

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    def settle(self, outcome: str, output: str = "", error: Optional[GatewayError] = None) -> bool:
        """Record the one terminal outcome. Returns False if already settled."""
        with self.lock:
            if self.outcome is not None:
                return False
            self.outcome = outcome
            self.output = output
            self.error = error
            self.state = DONE
            self.done_event.set()
        if self.on_settled is not None:
            self.on_settled()
        return True

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def result(self) -> str:
        if self.error is not None:
            raise self.error
        return self.output


class RemoteExecutor:
    """Runs one command per fresh SSH connection with a wall-clock timeout.

    Each invocation owns one worker thread (preflight, connect, exec,
    collect) and one timer thread; callers only wait on the outcome, either
    blocking (``execute``) or from the event loop (``execute_async``).
    """

    def __init__(
        self,
        config: ServerConfig,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        prober: Callable[[str, int, int], PreflightResult] = probe,
        policy: Optional[CommandPolicy] = None,
    ):
        self.config = config
        self.client_factory = client_factory
        self.prober = prober
        self.policy = policy if policy is not None else build_policy(config)

    def start(self, command: str, on_settled: Optional[Callable[[], None]] = None) -> CommandInvocation:
        validate_command(command, self.policy)
        invocation = CommandInvocation(
            command=command, timeout_ms=self.config.command_timeout_ms, on_settled=on_settled
        )
        worker = threading.Thread(target=self._work, args=(invocation,), daemon=True, name="ssh-exec")
        worker.start()
        return invocation

    def execute(self, command: str) -> str:
        invocation = self.start(command)
        invocation.done_event.wait()
        return self._finish(invocation)

    async def execute_async(self, command: str) -> str:
        loop = asyncio.get_running_loop()
        settled = loop.create_future()

        def wake() -> None:
            try:
                loop.call_soon_threadsafe(_resolve, settled)
            except RuntimeError:
                # loop already closed during shutdown
                log("debug", "Dropping exec outcome for closed loop", command=preview(command))

        invocation = self.start(command, on_settled=wake)
        await settled
        return self._finish(invocation)

    def _finish(self, invocation: CommandInvocation) -> str:
        log(
            "debug" if invocation.outcome == SUCCESS else "warn",
            "SSH exec settled",
            outcome=invocation.outcome,
            ms=invocation.elapsed_ms(),
            command=preview(invocation.command),
        )
        return invocation.result()

    def preflight(self) -> None:
        host, port = self.config.ssh_host, self.config.ssh_port
        result = self.prober(host, port, self.config.preflight_timeout_ms)
        if not result.ok:
            log("warn", "SSH preflight failed", host=host, port=port, reason=result.reason)
            raise ReachabilityError(unreachable_message(host, port, result.reason), result.reason)

    def _work(self, invocation: CommandInvocation) -> None:
        if not self.config.skip_preflight:
            try:
                self.preflight()
            except ReachabilityError as exc:
                invocation.settle(ERROR, error=exc)
                return

        timer = threading.Timer(invocation.timeout_ms / 1000.0, self._on_timeout, args=(invocation,))
        timer.daemon = True
        invocation.timer = timer
        timer.start()
        try:
            self._run(invocation)
        finally:
            timer.cancel()

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self.config.ssh_host,
            "port": self.config.ssh_port,
            "username": self.config.ssh_user,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        # key wins when both are configured
        if self.config.ssh_key_path:
            kwargs["key_filename"] = self.config.ssh_key_path
            if self.config.ssh_key_passphrase:
                kwargs["passphrase"] = self.config.ssh_key_passphrase
        elif self.config.ssh_password:
            kwargs["password"] = self.config.ssh_password
        return kwargs

    def _open_client(self, invocation: CommandInvocation) -> Any:
        client = self.client_factory()
        invocation.client = client
        if self.config.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        if self.config.ssh_debug:
            log(
                "debug", "SSH connect attempt",
                host=self.config.ssh_host, port=self.config.ssh_port, user=self.config.ssh_user,
                auth="key" if self.config.ssh_key_path else "password",
            )
        client.connect(**self._connect_kwargs())
        return client

    def _run(self, invocation: CommandInvocation) -> None:
        try:
            client = self._open_client(invocation)
        except paramiko.AuthenticationException as exc:
            invocation.settle(ERROR, error=AuthenticationError(f"SSH authentication failed: {exc}"))
            self._close(invocation)
            return
        except Exception as exc:
            invocation.settle(ERROR, error=RemoteConnectionError(f"SSH connection error: {exc}"))
            self._close(invocation)
            return

        if invocation.settled:
            # timed out during the handshake
            self._close(invocation)
            return

        invocation.state = EXECUTING
        try:
            _, stdout, _ = client.exec_command(invocation.command)
        except Exception as exc:
            invocation.settle(ERROR, error=RemoteConnectionError(f"SSH exec error: {exc}"))
            self._close(invocation)
            return

        try:
            self._collect(invocation, stdout.channel)
        except Exception as exc:
            invocation.settle(ERROR, error=RemoteConnectionError(f"SSH channel error: {exc}"))
            self._close(invocation)

    def _collect(self, invocation: CommandInvocation, channel: Any) -> None:
        while not invocation.settled:
            progressed = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    invocation.stdout_chunks.append(data)
                    progressed = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    invocation.stderr_chunks.append(data)
                    progressed = True
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if not progressed:
                time.sleep(POLL_INTERVAL)

        if invocation.settled:
            # the timeout path owns the connection now
            return

        invocation.state = SETTLING
        exit_status = channel.recv_exit_status()
        invocation.exit_status = exit_status
        stdout = b"".join(invocation.stdout_chunks).decode("utf-8", errors="replace")
        stderr = b"".join(invocation.stderr_chunks).decode("utf-8", errors="replace")
        if stderr:
            invocation.settle(
                ERROR,
                error=RemoteExecutionError(f"Error (code {exit_status}):\n{stderr}", exit_status, stderr),
            )
        else:
            invocation.settle(SUCCESS, output=stdout)
        self._close(invocation)

    def _on_timeout(self, invocation: CommandInvocation) -> None:
        timeout_ms = invocation.timeout_ms
        error = CommandTimeoutError(f"Command execution timed out after {timeout_ms}ms", timeout_ms)
        if not invocation.settle(TIMEOUT, error=error):
            return
        self._abort_remote(invocation)

    def _abort_remote(self, invocation: CommandInvocation) -> None:
        client = invocation.client
        abort_s = self.config.abort_timeout_ms / 1000.0
        try:
            transport = client.get_transport() if client is not None else None
            if transport is not None and transport.is_active():
                _, stdout, _ = client.exec_command(build_abort_command(invocation.command), timeout=abort_s)
                channel = stdout.channel
                deadline = time.monotonic() + abort_s
                while not channel.exit_status_ready():
                    if time.monotonic() >= deadline:
                        log("debug", "Remote abort timed out", command=preview(invocation.command))
                        break
                    time.sleep(POLL_INTERVAL)
        except Exception as exc:
            log("debug", "Remote abort failed", error=str(exc))
        finally:
            self._close(invocation)

    def _close(self, invocation: CommandInvocation) -> None:
        client = invocation.client
        if client is None:
            return
        try:
            client.close()
        except Exception as exc:
            log("debug", "SSH close failed", error=str(exc))


class LocalExecutor:
    """Runs the command on the gateway host itself. Diagnostic fallback."""

    def __init__(self, config: ServerConfig, policy: Optional[CommandPolicy] = None):
        self.config = config
        self.policy = policy if policy is not None else build_policy(config)

    def execute(self, command: str) -> str:
        validate_command(command, self.policy)
        timeout_ms = self.config.command_timeout_ms
        started = time.monotonic()
        try:
            completed = subprocess.run(
                command, shell=True, capture_output=True, text=True, timeout=timeout_ms / 1000.0,
            )
        except subprocess.TimeoutExpired:
            raise CommandTimeoutError(f"Command execution timed out after {timeout_ms}ms", timeout_ms) from None
        return self._finish(completed.returncode, completed.stdout, completed.stderr or "", started)

    async def execute_async(self, command: str) -> str:
        validate_command(command, self.policy)
        timeout_ms = self.config.command_timeout_ms
        started = time.monotonic()
        proc = await asyncio.create_subprocess_shell(
            command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandTimeoutError(f"Command execution timed out after {timeout_ms}ms", timeout_ms) from None
        return self._finish(
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            started,
        )

    def _finish(self, returncode: int, stdout: str, stderr: str, started: float) -> str:
        ms = int((time.monotonic() - started) * 1000)
        if returncode != 0:
            log("error", "Local exec error", ms=ms, code=returncode, stderr=preview(stderr))
            reason = stderr or f"exit status {returncode}"
            raise RemoteExecutionError(f"Local exec failed: {reason}", returncode, stderr)
        log("debug", "Local exec complete", ms=ms)
        return stdout


def _resolve(future: "asyncio.Future") -> None:
    if not future.done():
        future.set_result(None)


def build_executor(config: ServerConfig) -> Any:
    if config.local_exec:
        return LocalExecutor(config)
    return RemoteExecutor(config)
