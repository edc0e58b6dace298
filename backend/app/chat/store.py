"""DuckDB-backed message store.

Append-only log of chat messages keyed by business and visitor thread.
The relay is the only writer; the HTTP layer reads history pages and the
grouped conversation list for owner dashboards.

Database Schema:
    chat_messages table:
        - seq: Auto-incrementing insertion sequence (tie-breaker)
        - id: 32-char hex message id, assigned here
        - business_id / visitor_id: the conversation thread
        - from_name: sender display name at send time
        - sender_kind: 'visitor' or 'owner'
        - text: trimmed message text
        - created_at: seconds since epoch, increasing per business
        - client_token: sender's correlation token, NULL if none was sent

Thread Safety:
    The relay calls the store from Starlette's threadpool, so every access
    to the connection goes through ``_lock``. ``created_at`` is assigned
    under the same lock, which keeps it monotonic per business.
"""
import logging
import threading
import time
import uuid
from typing import Dict, List, Optional

import duckdb

from .errors import PersistenceError
from .schemas import ChatMessage, Conversation, IdentityKind

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

CONVERSATION_SORTS = ("new", "old", "atoz", "ztoa")

# Minimum gap between two created_at values of one business, so a
# created_at cursor never splits messages that share a timestamp.
TIMESTAMP_STEP = 1e-6

_COLUMNS = "id, business_id, visitor_id, from_name, sender_kind, text, created_at, client_token"


class MessageStore:
    """Service for persisting chat messages in DuckDB."""

    _db_path: str = "chat_messages.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        if db_path:
            self._db_path = db_path
        self._max_page_size = max_page_size
        self._default_page_size = min(default_page_size, max_page_size)
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        # business_id -> last assigned created_at
        self._last_created: Dict[str, float] = {}
        self._initialize_db()
        logger.info("[MessageStore] Initialized with db=%s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq         BIGINT DEFAULT nextval('chat_messages_seq') PRIMARY KEY,
                id          VARCHAR NOT NULL UNIQUE,
                business_id VARCHAR NOT NULL,
                visitor_id  VARCHAR NOT NULL,
                from_name   VARCHAR NOT NULL,
                sender_kind VARCHAR NOT NULL,
                text        VARCHAR NOT NULL,
                created_at  DOUBLE NOT NULL,
                client_token VARCHAR
            )
        """)
        # Databases created before client tokens were stored.
        conn.execute("ALTER TABLE chat_messages ADD COLUMN IF NOT EXISTS client_token VARCHAR")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_room "
            "ON chat_messages(business_id, visitor_id)"
        )

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def append(
        self,
        business_id: str,
        visitor_id: str,
        from_name: str,
        text: str,
        sender_kind: IdentityKind = IdentityKind.VISITOR,
        client_token: Optional[str] = None,
    ) -> ChatMessage:
        """Persist a message and return it with its assigned id and timestamp.

        Raises:
            PersistenceError: if the database write fails.
        """
        message_id = uuid.uuid4().hex
        try:
            with self._lock:
                created_at = self._next_timestamp(business_id)
                self._get_connection().execute(
                    f"INSERT INTO chat_messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        message_id, business_id, visitor_id, from_name,
                        IdentityKind(sender_kind).value, text, created_at, client_token,
                    ],
                )
                self._last_created[business_id] = created_at
        except duckdb.Error as exc:
            logger.error(
                "[MessageStore] Write failed for %s:%s: %s", business_id, visitor_id, exc
            )
            raise PersistenceError("Message could not be delivered") from exc

        return ChatMessage(
            id=message_id,
            businessId=business_id,
            visitorId=visitor_id,
            from_=from_name,
            senderKind=sender_kind,
            text=text,
            createdAt=created_at,
            clientToken=client_token,
        )

    def _next_timestamp(self, business_id: str) -> float:
        # Caller holds _lock.
        last = self._last_created.get(business_id)
        if last is None:
            row = self._get_connection().execute(
                "SELECT max(created_at) FROM chat_messages WHERE business_id = ?",
                [business_id],
            ).fetchone()
            last = row[0] if row and row[0] is not None else 0.0
        return max(time.time(), last + TIMESTAMP_STEP)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def list_by_room(self, business_id: str, visitor_id: str) -> List[ChatMessage]:
        """All messages of one thread, oldest first."""
        return self._query(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE business_id = ? AND visitor_id = ?
            ORDER BY created_at ASC, seq ASC
            """,
            [business_id, visitor_id],
        )

    def get_page(
        self,
        business_id: str,
        visitor_id: str,
        before: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[ChatMessage]:
        """Get the ``limit`` newest messages older than ``before``.

        Messages are returned oldest first so a client can prepend them.
        ``limit`` defaults to the store's page size and is capped at its
        maximum page size.
        """
        if limit is None:
            limit = self._default_page_size
        limit = max(1, min(limit, self._max_page_size))
        params: list = [business_id, visitor_id]
        cursor_clause = ""
        if before is not None:
            cursor_clause = "AND created_at < ?"
            params.append(before)
        params.append(limit)

        newest_first = self._query(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE business_id = ? AND visitor_id = ? {cursor_clause}
            ORDER BY created_at DESC, seq DESC
            LIMIT ?
            """,
            params,
        )
        return list(reversed(newest_first))

    def list_conversations(
        self, business_id: str, sort: str = "new", search: str = ""
    ) -> List[Conversation]:
        """Group a business's messages into per-visitor threads.

        Args:
            business_id: The business whose threads are listed.
            sort: ``new`` (latest activity first), ``old`` (earliest first
                message first), ``atoz`` or ``ztoa`` by visitor name.
            search: Case-insensitive substring filter on the visitor name.
        """
        if sort not in CONVERSATION_SORTS:
            sort = "new"

        messages = self._query(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE business_id = ?
            ORDER BY created_at ASC, seq ASC
            """,
            [business_id],
        )

        threads: Dict[str, List[ChatMessage]] = {}
        for message in messages:
            threads.setdefault(message.visitorId, []).append(message)

        conversations = []
        for visitor_id, thread in threads.items():
            visitor_names = [
                m.from_ for m in thread if m.senderKind == IdentityKind.VISITOR
            ]
            conversations.append(Conversation(
                visitorId=visitor_id,
                visitorName=visitor_names[-1] if visitor_names else visitor_id,
                messageCount=len(thread),
                lastMessageAt=thread[-1].createdAt,
                messages=thread,
            ))

        if search:
            needle = search.lower()
            conversations = [c for c in conversations if needle in c.visitorName.lower()]

        if sort == "new":
            conversations.sort(key=lambda c: c.lastMessageAt, reverse=True)
        elif sort == "old":
            conversations.sort(key=lambda c: c.messages[0].createdAt)
        elif sort == "atoz":
            conversations.sort(key=lambda c: c.visitorName.lower())
        else:
            conversations.sort(key=lambda c: c.visitorName.lower(), reverse=True)
        return conversations

    def count(self, business_id: str, visitor_id: str) -> int:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT count(*) FROM chat_messages WHERE business_id = ? AND visitor_id = ?",
                [business_id, visitor_id],
            ).fetchone()
        return row[0]

    def _query(self, sql: str, params: list) -> List[ChatMessage]:
        try:
            with self._lock:
                rows = self._get_connection().execute(sql, params).fetchall()
        except duckdb.Error as exc:
            logger.error("[MessageStore] Read failed: %s", exc)
            raise PersistenceError("Message history is unavailable") from exc
        return [self._row_to_message(row) for row in rows]

    @staticmethod
    def _row_to_message(row) -> ChatMessage:
        return ChatMessage(
            id=row[0],
            businessId=row[1],
            visitorId=row[2],
            from_=row[3],
            senderKind=IdentityKind(row[4]),
            text=row[5],
            createdAt=row[6],
            clientToken=row[7],
        )

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
