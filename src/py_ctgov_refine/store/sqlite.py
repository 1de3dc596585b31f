# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides a record store backed by a local SQLite file.

The full-text index is an FTS5 external-content table. Triggers on the
studies table keep it in step with every insert, update and delete inside
the same transaction as the row change.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import InvalidQueryError
from .base import BaseStore

logger = logging.getLogger(__name__)

_QUERY_ERROR_MARKERS = ("fts5", "unterminated string", "no such column")


class SqliteStore(BaseStore):
    """A record store for a single local SQLite database file."""

    dialect = "sqlite"
    column_types = {
        "text": "TEXT",
        "integer": "INTEGER",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMP",
    }

    def __init__(self, db_path: str | Path) -> None:
        """Open (and create if needed) the database file.

        Args:
            db_path: Path to the database file, or ":memory:".

        """
        super().__init__()
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Transactions are managed explicitly in get_conn.
        self.conn = sqlite3.connect(
            self.db_path, isolation_level=None, check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")
        self._conn_lock = threading.RLock()

    @contextmanager
    def get_conn(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a transaction.

        Commits on success and rolls back on any exception.
        """
        with self._conn_lock:
            self.conn.execute("BEGIN")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def execute_script(self, sql: str) -> None:
        with self._conn_lock:
            self.conn.executescript(sql)

    def existing_columns(self, conn: sqlite3.Connection, table: str) -> set[str]:
        return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}

    def param(self, name: str) -> str:
        return f":{name}"

    def encode_json(self, value: Any) -> str:
        return json.dumps(value)

    def sync_search_index(self) -> None:
        """Rebuild the FTS5 index if it does not cover every stored study.

        This happens when the index is added to a database that already
        holds studies.
        """
        with self._write_lock, self.get_conn() as conn:
            indexed = conn.execute(
                "SELECT COUNT(*) AS n FROM studies_fts_docsize"
            ).fetchone()["n"]
            stored = conn.execute("SELECT COUNT(*) AS n FROM studies").fetchone()["n"]
            if indexed != stored:
                logger.info(
                    "Rebuilding full-text index (%d indexed, %d stored).", indexed, stored,
                )
                conn.execute("INSERT INTO studies_fts(studies_fts) VALUES ('rebuild')")

    def full_text_search(self, query: str, limit: int = 100) -> list[str]:
        """Return NCT IDs matching an FTS5 query, ordered by bm25 rank."""
        if not query or not query.strip():
            msg = "Full-text query must not be empty."
            raise InvalidQueryError(msg)
        try:
            with self.get_conn() as conn:
                rows = conn.execute(
                    "SELECT nct_id FROM studies_fts WHERE studies_fts MATCH :query "
                    "ORDER BY rank LIMIT :limit",
                    {"query": query, "limit": limit},
                ).fetchall()
        except sqlite3.OperationalError as e:
            # FTS5 reports query syntax problems as OperationalError.
            if not any(marker in str(e) for marker in _QUERY_ERROR_MARKERS):
                raise
            msg = f"Invalid full-text query {query!r}: {e}"
            raise InvalidQueryError(msg) from e
        return [row["nct_id"] for row in rows]

    def close(self) -> None:
        with self._conn_lock:
            self.conn.close()
