import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

# Session states
CREATED = "created"
ACTIVE = "active"
IDLE = "idle"
REAPED = "reaped"
CLOSED_BY_PEER = "closed_by_peer"
CLOSED = "closed"

TERMINAL_STATES = {REAPED, CLOSED_BY_PEER, CLOSED}


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    id: str
    engine: Any
    channel: Any = None
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    created_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_count: int = 0
    state: str = CREATED
    keepalive_task: Optional[asyncio.Task] = None
    tasks: Set[asyncio.Task] = field(default_factory=set)

    @property
    def closed(self) -> bool:
        return self.state in TERMINAL_STATES

    def idle_for(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "messages": self.message_count,
            "created_at": self.created_wall.isoformat(),
            "idle_seconds": round(self.idle_for(), 3),
            "has_channel": self.channel is not None,
        }


class SessionRegistry:
    """In-memory id -> Session map owned by the event loop.

    All calls happen on one event loop, so there is no locking. Ids are
    uuid4 values, so a removed id is never minted again.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def create(self, session_id: str, session: Session) -> None:
        if session_id in self._sessions:
            raise ValueError(f"session {session_id} already exists")
        self._sessions[session_id] = session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.last_activity = time.monotonic()
        session.state = ACTIVE

    def list_all(self) -> List[Tuple[str, Session]]:
        return list(self._sessions.items())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))
