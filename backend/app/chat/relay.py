"""Relay core for business/visitor conversations.

The relay accepts ``join``, ``message`` and ``leave`` events from
connections, validates them against per-connection sessions, persists
messages through the message store and fans them out to every connection
currently in the message's room.

Key features:
    - One room per (businessId, visitorId) thread
    - History snapshot delivered only to the joining connection
    - Persist-then-fan-out; nothing is delivered that was not stored
    - Per-room serialization of history snapshots, writes and fan-out
    - Concurrent fan-out with asyncio.gather() and dead connection cleanup
    - Errors reported to the originating connection only

Thread Safety:
    Designed for a single asyncio event loop. Session and room index
    mutations never span an ``await``. The only suspension points inside a
    room's critical section are store calls (run in the threadpool) and
    socket sends; the per-room lock keeps persistence order and fan-out
    order identical for a room and lets a joining connection's history
    snapshot and later fan-outs line up without gaps or duplicates.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from .errors import (
    ChatError,
    NotFoundError,
    NotJoinedError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from .presence import PresenceNotifier
from .rooms import room_key, validate_identifier
from .schemas import ChatMessage, Identity, IdentityKind, JoinEvent, MessageEvent
from .session import Session, SessionRegistry, SessionState

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 2000


@dataclass
class _RoomGuard:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _describe_validation_error(exc: PydanticValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "event"
        problems.append(f"{location}: {err.get('msg', 'invalid')}")
    return "Invalid event: " + "; ".join(problems)


class RelayCore:
    """Routes, persists and fans out chat messages for all connections.

    One instance per process, built with its collaborators injected:

    Args:
        store: Message store with ``append`` and ``list_by_room``.
        directory: Business directory with ``exists`` and ``is_owned_by``.
        presence: Presence notifier (defaults to ``PresenceNotifier()``).
        max_text_length: Maximum message length in code points.
    """

    def __init__(
        self,
        store,
        directory,
        presence: Optional[PresenceNotifier] = None,
        max_text_length: int = MAX_TEXT_LENGTH,
    ) -> None:
        self._store = store
        self._directory = directory
        self._presence = presence or PresenceNotifier()
        self._max_text_length = max_text_length
        self._registry = SessionRegistry()
        # room_key -> lock serializing snapshot/persist/fan-out for the room
        self._room_guards: Dict[str, _RoomGuard] = {}

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(
        self, connection: Any, identity: Identity, connection_id: Optional[str] = None
    ) -> Session:
        """Open an UNJOINED session for an authenticated connection.

        Sends ``{type: "connected", connectionId, identity}`` to the connection.
        """
        connection_id = connection_id or str(uuid.uuid4())
        session = self._registry.open(connection_id, identity, connection)
        logger.info(
            "[Relay] Connection %s opened for %s %s",
            connection_id, identity.kind.value, identity.id,
        )
        await self._send(session, {
            "type": "connected",
            "connectionId": connection_id,
            "identity": identity.model_dump(mode="json"),
        })
        return session

    async def disconnect(self, connection_id: str) -> None:
        """Destroy a connection's session and announce a visitor's departure."""
        session = self._registry.close(connection_id)
        if session is None:
            return
        logger.info("[Relay] Connection %s closed (room=%s)", connection_id, session.room_key)
        if session.room_key is not None:
            await self._presence.announce_leave(self, session, session.room_key)

    # =========================================================================
    # Event dispatch
    # =========================================================================

    async def handle(self, connection_id: str, data: Any) -> None:
        """Dispatch one raw client event.

        Relay errors and malformed payloads are turned into an ``error``
        event for this connection; they never propagate to the caller.
        """
        session = self._registry.get(connection_id)
        if session is None:
            logger.debug("[Relay] Event for unknown connection %s ignored", connection_id)
            return
        self._registry.touch(connection_id)

        client_token = None
        if isinstance(data, dict) and isinstance(data.get("clientToken"), str):
            client_token = data["clientToken"]

        try:
            if not isinstance(data, dict):
                raise ValidationError("Event must be a JSON object")

            event_type = data.get("type", "message")
            logger.debug("[Relay] %s received type=%s", connection_id, event_type)

            if event_type == "join":
                event = JoinEvent.model_validate(data)
                await self.join(
                    connection_id,
                    event.businessId,
                    target_visitor_id=event.visitorId,
                )
            elif event_type == "message":
                event = MessageEvent.model_validate(data)
                await self.message(
                    connection_id,
                    event.businessId,
                    event.text,
                    visitor_id=event.visitorId,
                    client_token=event.clientToken,
                )
            elif event_type == "leave":
                await self.leave(connection_id)
            elif event_type == "ping":
                await self._send(session, {"type": "pong"})
            else:
                raise ValidationError(f"Unknown event type: {event_type!r}")

        except PydanticValidationError as exc:
            error = ValidationError(_describe_validation_error(exc), client_token=client_token)
            logger.info("[Relay] Rejected event from %s: %s", connection_id, error.message)
            await self._send(session, error.to_event())
        except ChatError as exc:
            if exc.client_token is None:
                exc.client_token = client_token
            logger.info(
                "[Relay] Rejected event from %s: %s (%s)", connection_id, exc.message, exc.code
            )
            await self._send(session, exc.to_event())

    # =========================================================================
    # Operations
    # =========================================================================

    async def join(
        self,
        connection_id: str,
        business_id: str,
        target_visitor_id: Optional[str] = None,
    ) -> Optional[str]:
        """Join the conversation room for ``business_id``.

        Visitors always join their own thread; a ``target_visitor_id`` that
        differs from their identity is rejected. Owners must own the
        business and name the visitor thread to attach to; without one the
        connection stays UNJOINED and gets a ``pending`` event.

        Returns:
            The joined room key, or None if no room was joined.

        Raises:
            ValidationError: malformed ids or a visitor claiming another id.
            NotFoundError: the business does not exist.
            PermissionDeniedError: an owner joining a business they don't own.
            PersistenceError: history could not be loaded.
        """
        session = self._require_session(connection_id)
        identity = session.identity
        validate_identifier(business_id, "businessId")
        if target_visitor_id is not None:
            validate_identifier(target_visitor_id, "visitorId")

        if identity.kind == IdentityKind.VISITOR:
            if target_visitor_id is not None and target_visitor_id != identity.id:
                raise ValidationError("visitorId does not match the signed-in visitor")
            visitor_id = identity.id
        else:
            visitor_id = target_visitor_id

        if not await run_in_threadpool(self._directory.exists, business_id):
            raise NotFoundError(f"Business {business_id} not found")
        if identity.kind == IdentityKind.OWNER:
            owned = await run_in_threadpool(self._directory.is_owned_by, business_id, identity.id)
            if not owned:
                raise PermissionDeniedError(f"Business {business_id} is not owned by you")

        # The connection may have gone away while the directory was queried.
        if self._registry.get(connection_id) is None:
            return None

        if visitor_id is None:
            previous = self._registry.mark_pending(connection_id, business_id)
            if previous is not None:
                await self._presence.announce_leave(self, session, previous)
            logger.info(
                "[Relay] Owner %s attached to business %s without a thread",
                identity.id, business_id,
            )
            await self._send(session, {
                "type": "pending",
                "businessId": business_id,
                "reason": "visitorId is required to join a conversation",
            })
            return None

        key = room_key(business_id, visitor_id)
        already_member = session.room_key == key

        async with self._room_guard(key):
            history = await run_in_threadpool(self._store.list_by_room, business_id, visitor_id)
            if self._registry.get(connection_id) is None:
                return None
            previous = self._registry.assign(connection_id, key, business_id, visitor_id)
            delivered = await self._send(session, {
                "type": "history",
                "roomKey": key,
                "businessId": business_id,
                "visitorId": visitor_id,
                "messages": [m.to_wire() for m in history],
            })
            if not delivered:
                self._registry.release(connection_id)

        if not delivered:
            logger.info("[Relay] History for %s not delivered, left room %s", connection_id, key)
            if previous is not None:
                await self._presence.announce_leave(self, session, previous)
            return None

        logger.info(
            "[Relay] %s %s joined room %s (%d messages in history, %d connections)",
            identity.kind.value, identity.id, key, len(history), self._registry.room_size(key),
        )
        if previous is not None:
            await self._presence.announce_leave(self, session, previous)
        if not already_member:
            await self._presence.announce_join(self, session, key)
        return key

    async def message(
        self,
        connection_id: str,
        business_id: str,
        text: Any,
        visitor_id: Optional[str] = None,
        client_token: Optional[str] = None,
    ) -> ChatMessage:
        """Persist a message and fan it out to its room, sender included.

        ``visitor_id`` defaults to the thread the session joined; it must
        name the same room. The ``from`` name is the sender's resolved
        display name, never a client-supplied one.

        The length limit applies to the text after leading and trailing
        whitespace is stripped, in code points; padding never counts.
        ``client_token`` is stored with the message and echoed on its
        fan-out and in later history snapshots.

        Raises:
            ValidationError: empty, whitespace-only or oversized text.
            NotJoinedError: the session is not joined to that room.
            PersistenceError: the store write failed; nothing was sent.
        """
        session = self._require_session(connection_id)
        cleaned = self._clean_text(text, client_token)

        if not session.is_joined:
            raise NotJoinedError("Join a conversation before sending messages", client_token=client_token)
        target_visitor = visitor_id if visitor_id is not None else session.visitor_id
        if business_id != session.business_id or target_visitor != session.visitor_id:
            raise NotJoinedError("Not joined to that conversation", client_token=client_token)

        key = session.room_key
        identity = session.identity
        async with self._room_guard(key):
            try:
                stored = await run_in_threadpool(
                    self._store.append,
                    business_id,
                    target_visitor,
                    identity.displayName,
                    cleaned,
                    identity.kind,
                    client_token,
                )
            except PersistenceError as exc:
                exc.client_token = client_token
                raise
            logger.info(
                "[Relay] Message %s from %s %s in room %s, fan-out to %d connections",
                stored.id, identity.kind.value, identity.id, key, self._registry.room_size(key),
            )
            await self.broadcast({"type": "message", **stored.to_wire()}, key)
        return stored

    async def leave(self, connection_id: str) -> Optional[str]:
        """Explicitly leave the current room; the connection stays open."""
        session = self._require_session(connection_id)
        previous = self._registry.release(connection_id)
        if previous is not None:
            logger.info("[Relay] Connection %s left room %s", connection_id, previous)
            await self._presence.announce_leave(self, session, previous)
        await self._send(session, {"type": "left", "roomKey": previous})
        return previous

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(self, message: dict, room_key: str) -> None:
        """Send a message to every connection in a room concurrently.

        Connections whose send fails leave the room and return to UNJOINED.
        """
        sessions = self._registry.members(room_key)
        if not sessions:
            return

        results = await asyncio.gather(
            *[self._safe_send(s.connection, message) for s in sessions],
            return_exceptions=True
        )
        failed = [s for s, ok in zip(sessions, results) if ok is not True]
        await self._cleanup_connections(room_key, failed)

    async def broadcast_except(
        self, message: dict, room_key: str, exclude_connection_id: str
    ) -> None:
        """Send a message to every connection in a room except one."""
        sessions = [
            s for s in self._registry.members(room_key)
            if s.connection_id != exclude_connection_id
        ]
        if not sessions:
            return

        results = await asyncio.gather(
            *[self._safe_send(s.connection, message) for s in sessions],
            return_exceptions=True
        )
        failed = [s for s, ok in zip(sessions, results) if ok is not True]
        await self._cleanup_connections(room_key, failed)

    async def _send(self, session: Session, message: dict) -> bool:
        return await self._safe_send(session.connection, message)

    async def _safe_send(self, connection: Any, message: dict) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug("[Relay] Failed to send to connection: %s", e)
            return False

    async def _cleanup_connections(self, room_key: str, failed: List[Session]) -> None:
        """Take connections that missed a fan-out out of the room.

        A connection that missed a message can no longer see the room's
        full sequence, so its session goes back to UNJOINED; the client has
        to join again and gets a fresh history snapshot.
        """
        for session in failed:
            if session.room_key != room_key:
                continue
            self._registry.release(session.connection_id)
            logger.info(
                "[Relay] Removed connection %s from room %s after a failed send",
                session.connection_id, room_key,
            )
            await self._send(session, {
                "type": "left",
                "roomKey": room_key,
                "reason": "delivery_failed",
            })

    # =========================================================================
    # Read-only views
    # =========================================================================

    def session_state(self, connection_id: str) -> SessionState:
        session = self._registry.get(connection_id)
        return session.state if session else SessionState.TERMINATED

    def room_of(self, connection_id: str) -> Optional[str]:
        session = self._registry.get(connection_id)
        return session.room_key if session else None

    def room_members(self, room_key: str) -> Set[str]:
        return self._registry.member_ids(room_key)

    def room_size(self, room_key: str) -> int:
        return self._registry.room_size(room_key)

    @property
    def connection_count(self) -> int:
        return len(self._registry)

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_session(self, connection_id: str) -> Session:
        session = self._registry.get(connection_id)
        if session is None:
            raise NotJoinedError("Connection has no open session")
        return session

    def _clean_text(self, text: Any, client_token: Optional[str]) -> str:
        """Strip surrounding whitespace, then check the stripped length."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message text is required", client_token=client_token)
        cleaned = text.strip()
        if len(cleaned) > self._max_text_length:
            raise ValidationError(
                f"Message text exceeds {self._max_text_length} characters",
                client_token=client_token,
            )
        return cleaned

    @asynccontextmanager
    async def _room_guard(self, key: str) -> AsyncIterator[None]:
        guard = self._room_guards.get(key)
        if guard is None:
            guard = self._room_guards[key] = _RoomGuard()
        guard.users += 1
        try:
            async with guard.lock:
                yield
        finally:
            guard.users -= 1
            if guard.users == 0:
                del self._room_guards[key]
