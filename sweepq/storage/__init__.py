"""Storage - models and repositories over the central sweepq database"""

from __future__ import annotations

import sqlite3
from typing import Any

from sweepq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock

Params = tuple[Any, ...]


class BaseRepository:
    """Shared read/write helpers for repositories bound to one table."""

    def __init__(self, table_name: str) -> None:
        # Interpolated into SQL by subclasses, so only identifiers are accepted
        if not table_name.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table_name}")
        self.table_name = table_name

    def query_one(self, query: str, params: Params = ()) -> sqlite3.Row | None:
        with get_db_connection() as conn:
            return conn.execute(query, params).fetchone()

    def query_all(self, query: str, params: Params = ()) -> list[sqlite3.Row]:
        with get_db_connection() as conn:
            return conn.execute(query, params).fetchall()

    @retry_on_db_lock()
    def execute(self, query: str, params: Params = ()) -> int:
        """
        Run one INSERT, UPDATE or DELETE in its own transaction

        Returns:
            Affected row count. Claims (ON CONFLICT DO NOTHING, UPDATE ... WHERE
            status = ?) read 1 as "won" and 0 as "someone else holds it".
        """
        with db_transaction() as conn:
            return conn.execute(query, params).rowcount


__all__ = ["BaseRepository", "Params"]
