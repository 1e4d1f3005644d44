import asyncio
import time
from typing import Callable, List, Optional

from ssh_gateway.channel import ChannelClosed
from ssh_gateway.registry import ACTIVE, CREATED, IDLE, Session, SessionRegistry
from ssh_gateway.utils import log


async def keepalive_loop(session: Session, interval_s: float) -> None:
    """Emit ping events on the session's channel until it is closed."""
    while True:
        await asyncio.sleep(interval_s)
        channel = session.channel
        if channel is None or channel.closed:
            return
        try:
            channel.send_ping()
        except ChannelClosed:
            return


def start_keepalive(session: Session, interval_ms: int) -> asyncio.Task:
    cancel_keepalive(session)
    session.keepalive_task = asyncio.create_task(
        keepalive_loop(session, interval_ms / 1000.0), name=f"keepalive-{session.id}"
    )
    return session.keepalive_task


def cancel_keepalive(session: Session) -> None:
    task = session.keepalive_task
    session.keepalive_task = None
    if task is not None and not task.done():
        task.cancel()


def release_session(session: Session, state: str) -> None:
    """Tear down everything a session owns. Safe to call more than once."""
    cancel_keepalive(session)
    current = asyncio.current_task() if _loop_running() else None
    for task in list(session.tasks):
        if task is not current and not task.done():
            task.cancel()
    session.tasks.clear()
    if session.channel is not None:
        session.channel.close()
    if session.engine is not None:
        session.engine.close()
    session.state = state


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class Reaper:
    """Periodically removes sessions idle for longer than the max age."""

    def __init__(
        self,
        registry: SessionRegistry,
        max_age_ms: int,
        interval_ms: int,
        expire: Callable[[Session], None],
    ):
        self.registry = registry
        self.max_age_s = max_age_ms / 1000.0
        self.interval_s = interval_ms / 1000.0
        self.expire = expire
        self._task: Optional[asyncio.Task] = None

    def reap_once(self, now: Optional[float] = None) -> List[str]:
        now = time.monotonic() if now is None else now
        reaped = []
        for session_id, session in self.registry.list_all():
            idle = session.idle_for(now)
            if idle > self.max_age_s:
                self.expire(session)
                reaped.append(session_id)
                log("info", "Reaped idle session", sessionId=session_id, idleSec=round(idle))
            elif idle > self.interval_s and session.state in (CREATED, ACTIVE):
                session.state = IDLE
        return reaped

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                self.reap_once()
            except Exception as exc:
                log("error", "Reaper tick failed", error=str(exc))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="session-reaper")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
