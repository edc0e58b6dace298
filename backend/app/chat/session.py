"""Per-connection sessions and the room index.

The registry is the only mutable state shared across connections. It is
owned by the relay core; everything handed out to callers is a copy.

State per connection:
    UNJOINED -> JOINED(room) on join
    JOINED(a) -> JOINED(b) on re-join
    any -> TERMINATED on disconnect
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .schemas import Identity

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNJOINED = "unjoined"
    JOINED = "joined"
    TERMINATED = "terminated"


@dataclass
class Session:
    """Server-side record of one connection."""

    connection_id: str
    identity: Identity
    connection: Any = field(repr=False)  # transport handle with async send_json()
    state: SessionState = SessionState.UNJOINED
    room_key: Optional[str] = None
    business_id: Optional[str] = None
    visitor_id: Optional[str] = None
    joined_at: Optional[float] = None
    last_activity_at: float = field(default_factory=time.time)

    @property
    def is_joined(self) -> bool:
        return self.state == SessionState.JOINED


class SessionRegistry:
    """Maps connection ids to sessions and room keys to connection ids."""

    def __init__(self) -> None:
        # connection_id -> Session
        self._sessions: Dict[str, Session] = {}
        # room_key -> {connection_id}
        self._rooms: Dict[str, Set[str]] = {}

    def open(self, connection_id: str, identity: Identity, connection: Any) -> Session:
        if connection_id in self._sessions:
            raise KeyError(f"Connection {connection_id} already has a session")
        session = Session(connection_id=connection_id, identity=identity, connection=connection)
        self._sessions[connection_id] = session
        return session

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def touch(self, connection_id: str) -> None:
        session = self._sessions.get(connection_id)
        if session is not None:
            session.last_activity_at = time.time()

    def assign(
        self, connection_id: str, room_key: str, business_id: str, visitor_id: str
    ) -> Optional[str]:
        """Move a connection into ``room_key``.

        Removal from the previous room and insertion into the new one
        happen without yielding to the event loop, so a connection is never
        registered under two rooms.

        Returns:
            The previous room key, or None.
        """
        session = self._sessions[connection_id]
        previous = session.room_key
        if previous is not None and previous != room_key:
            self._discard(previous, connection_id)

        self._rooms.setdefault(room_key, set()).add(connection_id)
        session.room_key = room_key
        session.business_id = business_id
        session.visitor_id = visitor_id
        session.state = SessionState.JOINED
        session.joined_at = time.time()
        return previous if previous != room_key else None

    def mark_pending(self, connection_id: str, business_id: str) -> Optional[str]:
        """Record a business without a thread; the connection leaves any room."""
        previous = self.release(connection_id)
        self._sessions[connection_id].business_id = business_id
        return previous

    def release(self, connection_id: str) -> Optional[str]:
        """Take a connection out of its room; the session stays open."""
        session = self._sessions.get(connection_id)
        if session is None:
            return None
        previous = session.room_key
        if previous is not None:
            self._discard(previous, connection_id)
        session.room_key = None
        session.business_id = None
        session.visitor_id = None
        session.joined_at = None
        if session.state != SessionState.TERMINATED:
            session.state = SessionState.UNJOINED
        return previous

    def close(self, connection_id: str) -> Optional[Session]:
        """Destroy a session. Returns it (terminated) or None if unknown."""
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None
        if session.room_key is not None:
            self._discard(session.room_key, connection_id)
        session.state = SessionState.TERMINATED
        return session

    def members(self, room_key: str) -> List[Session]:
        return [
            self._sessions[cid]
            for cid in self._rooms.get(room_key, ())
            if cid in self._sessions
        ]

    def member_ids(self, room_key: str) -> Set[str]:
        return set(self._rooms.get(room_key, ()))

    def room_size(self, room_key: str) -> int:
        return len(self._rooms.get(room_key, ()))

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def __len__(self) -> int:
        return len(self._sessions)

    def _discard(self, room_key: str, connection_id: str) -> None:
        members = self._rooms.get(room_key)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room_key]
