"""DuckDB-backed business directory.

The listing REST layer writes businesses here; the relay reads existence
and ownership facts from it.
"""
import logging
import threading
from typing import Optional

import duckdb

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS businesses (
    id       VARCHAR PRIMARY KEY,
    name     VARCHAR NOT NULL,
    owner_id VARCHAR
)
"""


class BusinessDirectory:
    """Service answering business existence and ownership queries."""

    _default_db_path: str = "businesses.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_TABLE)
        self._lock = threading.Lock()
        logger.info("[BusinessDirectory] Initialized with db=%s", self._db_path)

    def register(self, business_id: str, name: str, owner_id: Optional[str] = None) -> None:
        """Insert or replace a business record."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO businesses (id, name, owner_id) VALUES (?, ?, ?)",
                [business_id, name, owner_id],
            )
        logger.info("[BusinessDirectory] Registered %s (owner=%s)", business_id, owner_id)

    def exists(self, business_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM businesses WHERE id = ?", [business_id]
            ).fetchone()
        return row is not None

    def is_owned_by(self, business_id: str, owner_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT owner_id FROM businesses WHERE id = ?", [business_id]
            ).fetchone()
        return row is not None and row[0] is not None and row[0] == owner_id

    def get_name(self, business_id: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT name FROM businesses WHERE id = ?", [business_id]
            ).fetchone()
        return row[0] if row else None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
