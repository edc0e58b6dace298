"""Receiver-side view of one conversation thread.

Clients render a message optimistically before the relay confirms it. The
optimistic entry carries a client-local correlation token; the relay echoes
that token on the fan-out of the persisted message, which carries the
durable store-assigned id. The token is stored with the message, so a
history snapshot received after a reconnect confirms pending sends the
same way. From then on the durable id is the dedup key: a message id that
was already applied is a no-op.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class ViewEntry:
    """One rendered line of a conversation."""

    text: str
    from_name: str
    created_at: float
    id: Optional[str] = None            # durable id, None while pending
    client_token: Optional[str] = None  # correlation token for local sends
    system: bool = False                # presence line, never persisted

    @property
    def pending(self) -> bool:
        return self.id is None and not self.system


class ConversationView:
    """Applies relay events to an ordered, de-duplicated list of entries."""

    def __init__(self) -> None:
        self.entries: List[ViewEntry] = []
        self._seen_ids: Dict[str, ViewEntry] = {}
        self._pending: Dict[str, ViewEntry] = {}

    def add_local(self, text: str, from_name: str) -> str:
        """Render an unsent message optimistically; returns its correlation token."""
        token = f"local-{uuid.uuid4().hex}"
        entry = ViewEntry(
            text=text.strip(), from_name=from_name, created_at=time.time(), client_token=token
        )
        self.entries.append(entry)
        self._pending[token] = entry
        return token

    def fail_local(self, client_token: str) -> bool:
        """Drop an optimistic entry whose send was rejected."""
        entry = self._pending.pop(client_token, None)
        if entry is None:
            return False
        self.entries.remove(entry)
        return True

    def apply(self, event: dict) -> bool:
        """Apply one relay event. Returns True if the view changed."""
        event_type = event.get("type")
        if event_type == "history":
            return self._apply_history(event.get("messages") or [])
        if event_type == "message":
            return self._apply_message(event)
        if event_type == "presence":
            self.entries.append(ViewEntry(
                text=event.get("msg", ""), from_name="system", created_at=time.time(), system=True
            ))
            return True
        if event_type == "error" and event.get("clientToken"):
            return self.fail_local(event["clientToken"])
        return False

    def _apply_history(self, messages: List[dict]) -> bool:
        # A snapshot replaces everything except sends still awaiting confirmation.
        self.entries = []
        self._seen_ids = {}
        for message in messages:
            token = message.get("clientToken")
            if message.get("id") and token in self._pending:
                entry = self._pending.pop(token)
                self._confirm(entry, message)
                self.entries.append(entry)
            else:
                self._append_durable(message)
        self.entries.extend(self._pending.values())
        return True

    def _apply_message(self, message: dict) -> bool:
        message_id = message.get("id")
        if not message_id or message_id in self._seen_ids:
            return False

        entry = self._pending.pop(message.get("clientToken"), None)
        if entry is not None:
            self._confirm(entry, message)
            return True

        self._append_durable(message)
        return True

    def _confirm(self, entry: ViewEntry, message: dict) -> None:
        entry.id = message["id"]
        entry.text = message.get("text", entry.text)
        entry.from_name = message.get("from", entry.from_name)
        entry.created_at = message.get("createdAt", entry.created_at)
        self._seen_ids[entry.id] = entry

    def _append_durable(self, message: dict) -> None:
        message_id = message.get("id")
        if not message_id or message_id in self._seen_ids:
            return
        entry = ViewEntry(
            id=message_id,
            text=message.get("text", ""),
            from_name=message.get("from", ""),
            created_at=message.get("createdAt", 0.0),
        )
        self.entries.append(entry)
        self._seen_ids[message_id] = entry

    @property
    def texts(self) -> List[str]:
        return [e.text for e in self.entries if not e.system]

    @property
    def pending_count(self) -> int:
        return len(self._pending)
