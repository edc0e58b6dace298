"""Identity resolution for chat connections.

Login and signup are handled by the directory's auth endpoints, which
write issued bearer tokens into the ``credentials`` table. The relay only
reads them back: a token resolves to a visitor or owner identity, or the
connection is rejected as unauthenticated.
"""
import logging
import secrets
import threading
from typing import Optional

import duckdb

from app.chat.errors import UnauthenticatedError
from app.chat.schemas import Identity, IdentityKind

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS credentials (
    token        VARCHAR PRIMARY KEY,
    kind         VARCHAR NOT NULL,
    subject_id   VARCHAR NOT NULL,
    display_name VARCHAR NOT NULL
)
"""


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityResolver:
    """Service mapping bearer tokens to identities."""

    _default_db_path: str = "credentials.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_TABLE)
        self._lock = threading.Lock()
        logger.info("[IdentityResolver] Initialized with db=%s", self._db_path)

    def resolve(self, token: Optional[str]) -> Identity:
        """Resolve a bearer token.

        Raises:
            UnauthenticatedError: if the token is missing or unknown.
        """
        if not token:
            raise UnauthenticatedError("Missing credentials")
        with self._lock:
            row = self._conn.execute(
                "SELECT kind, subject_id, display_name FROM credentials WHERE token = ?",
                [token],
            ).fetchone()
        if row is None:
            logger.warning("[IdentityResolver] Rejected unknown token")
            raise UnauthenticatedError("Invalid or expired credentials")
        return Identity(kind=IdentityKind(row[0]), id=row[1], displayName=row[2])

    def issue(self, kind: IdentityKind, subject_id: str, display_name: str) -> str:
        """Store a new token for an identity and return it."""
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._conn.execute(
                "INSERT INTO credentials (token, kind, subject_id, display_name) "
                "VALUES (?, ?, ?, ?)",
                [token, IdentityKind(kind).value, subject_id, display_name],
            )
        logger.info("[IdentityResolver] Issued %s token for %s", IdentityKind(kind).value, subject_id)
        return token

    def revoke(self, token: str) -> bool:
        with self._lock:
            result = self._conn.execute(
                "DELETE FROM credentials WHERE token = ? RETURNING token", [token]
            ).fetchone()
        return result is not None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
