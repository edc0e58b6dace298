"""Pydantic models for the chat relay wire protocol and persisted messages."""
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class IdentityKind(str, Enum):
    """Which side of a conversation a participant is on.

    Attributes:
        VISITOR: A signed-in visitor browsing the directory.
        OWNER: The owner of one or more listed businesses.
    """
    VISITOR = "visitor"
    OWNER = "owner"


class Identity(BaseModel):
    """Participant identity resolved from connection credentials."""
    kind: IdentityKind = Field(..., description="visitor or owner")
    id: str = Field(..., description="Stable participant id")
    displayName: str = Field(..., description="Name shown next to messages")


class ChatMessage(BaseModel):
    """A persisted chat message.

    ``from`` is a Python keyword, so the field is ``from_`` with the
    wire alias ``from``. Always dump with ``by_alias=True``.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Store-assigned message id")
    businessId: str = Field(..., description="Business the thread belongs to")
    visitorId: str = Field(..., description="Visitor side of the thread")
    from_: str = Field(..., alias="from", description="Sender display name at send time")
    senderKind: IdentityKind = Field(
        default=IdentityKind.VISITOR,
        description="Which side authored the message"
    )
    text: str = Field(..., description="Trimmed message text")
    createdAt: float = Field(
        default_factory=time.time,
        description="Server timestamp in seconds since epoch"
    )
    clientToken: Optional[str] = Field(
        default=None,
        description="Sender's correlation token for its optimistic copy"
    )

    def to_wire(self) -> dict:
        data = self.model_dump(by_alias=True, mode="json")
        if data["clientToken"] is None:
            del data["clientToken"]
        return data


class Conversation(BaseModel):
    """All messages of one visitor thread under a business."""
    visitorId: str
    visitorName: str
    messageCount: int
    lastMessageAt: float
    messages: List[ChatMessage] = Field(default_factory=list)

    def to_wire(self) -> dict:
        data = self.model_dump(mode="json", exclude={"messages"})
        data["messages"] = [m.to_wire() for m in self.messages]
        return data


# =============================================================================
# Client -> relay events
# =============================================================================


class JoinEvent(BaseModel):
    """``join`` payload.

    Visitors send ``visitorId``/``visitorName``; owners send ``name`` and
    optionally ``visitorId`` to select the thread they want to attach to.
    Names are informational only, the resolved identity wins.
    """
    model_config = ConfigDict(extra="ignore")

    businessId: str
    visitorId: Optional[str] = None
    visitorName: Optional[str] = None
    name: Optional[str] = None


class MessageEvent(BaseModel):
    """``message`` payload."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    businessId: str
    text: str
    from_: Optional[str] = Field(default=None, alias="from")
    visitorId: Optional[str] = None
    clientToken: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Client-local correlation id for optimistic UI"
    )
