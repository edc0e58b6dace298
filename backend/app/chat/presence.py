"""Visitor presence announcements.

Presence events are transient: they are sent to the other members of a
room and never written to the message store, so they never show up in
``history``.
"""
import logging
from typing import TYPE_CHECKING

from .rooms import parse_room_key
from .schemas import IdentityKind
from .session import Session

if TYPE_CHECKING:
    from .relay import RelayCore

logger = logging.getLogger(__name__)


class PresenceNotifier:
    """Announces visitor arrivals and departures to the rest of a room."""

    join_template = "{name} joined the chat"
    leave_template = "{name} left the chat"

    async def announce_join(self, relay: "RelayCore", session: Session, room_key: str) -> None:
        await self._announce(relay, session, room_key, self.join_template)

    async def announce_leave(self, relay: "RelayCore", session: Session, room_key: str) -> None:
        await self._announce(relay, session, room_key, self.leave_template)

    async def _announce(
        self, relay: "RelayCore", session: Session, room_key: str, template: str
    ) -> None:
        if session.identity.kind != IdentityKind.VISITOR:
            return
        business_id, visitor_id = parse_room_key(room_key)
        event = {
            "type": "presence",
            "msg": template.format(name=session.identity.displayName),
            "businessId": business_id,
            "visitorId": visitor_id,
        }
        logger.debug("[Presence] %s -> room %s", event["msg"], room_key)
        await relay.broadcast_except(event, room_key, session.connection_id)
