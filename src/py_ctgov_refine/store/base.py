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
"""Defines the abstract base class for record stores."""

import abc
import json
import logging
import threading
from collections.abc import Iterable
from contextlib import AbstractContextManager
from typing import Any

from jinja2 import Environment, PackageLoader
from pydantic import ValidationError

from ..models.results import BackfillReport
from ..models.study import Study
from ..projection import (
    INDEXED_COLUMNS,
    PROJECTED_COLUMNS,
    PROJECTION_VERSION,
    StudyRow,
    project_study,
)

logger = logging.getLogger(__name__)

# Columns of the studies table maintained by the store rather than projected.
# Added without a default when missing, since SQLite cannot add a column
# whose default is not constant.
BOOKKEEPING_COLUMNS: dict[str, str] = {
    "projection_version": "integer",
    "fetched_at": "timestamp",
    "updated_at": "timestamp",
}

# Child tables, replaced wholesale on every write of a study.
CHILD_TABLES: dict[str, list[str]] = {
    "conditions": ["condition"],
    "keywords": ["keyword"],
    "interventions": ["intervention_type", "intervention_name", "description"],
    "locations": [
        "facility",
        "city",
        "state",
        "country",
        "status",
        "latitude",
        "longitude",
    ],
    "primary_outcomes": ["measure", "description", "time_frame"],
    "secondary_outcomes": ["measure", "description", "time_frame"],
}


def _child_rows(row: StudyRow) -> dict[str, list[dict[str, Any]]]:
    """Rows for every child table, keyed by table name."""
    return {
        "conditions": [
            {"nct_id": row.nct_id, "condition": value} for value in row.conditions
        ],
        "keywords": [{"nct_id": row.nct_id, "keyword": value} for value in row.keywords],
        "interventions": [
            {"nct_id": row.nct_id, **item.model_dump()} for item in row.interventions
        ],
        "locations": [{"nct_id": row.nct_id, **loc.model_dump()} for loc in row.locations],
        "primary_outcomes": [
            {"nct_id": row.nct_id, **o.model_dump()} for o in row.primary_outcomes
        ],
        "secondary_outcomes": [
            {"nct_id": row.nct_id, **o.model_dump()} for o in row.secondary_outcomes
        ],
    }


class BaseStore(abc.ABC):
    """Abstract Base Class for the persistent record store.

    This class holds every query that is portable between backends: upserts,
    lookups, the backfill migration and session persistence. Subclasses
    follow the Adapter Pattern and supply the connection handling, the DDL
    template for their dialect, the parameter placeholder syntax and the
    full-text search query.

    Writes are serialized through a process-level lock so that a reader never
    observes a study whose flattened columns and full-text entry disagree.
    """

    #: Directory under ``store/sql`` holding this backend's templates.
    dialect: str
    #: Maps the portable column kinds in PROJECTED_COLUMNS to SQL types.
    column_types: dict[str, str]

    def __init__(self) -> None:
        self._write_lock = threading.RLock()
        self.jinja_env = Environment(
            loader=PackageLoader("py_ctgov_refine", "store/sql"),
            autoescape=False,  # SQL is not HTML
        )

    # -- Backend hooks -------------------------------------------------

    @abc.abstractmethod
    def get_conn(self) -> AbstractContextManager[Any]:
        """Yield a connection inside a transaction.

        The transaction must commit when the block exits normally and roll
        back when it raises.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def execute_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script, such as rendered DDL."""
        raise NotImplementedError

    @abc.abstractmethod
    def existing_columns(self, conn: Any, table: str) -> set[str]:
        """Return the names of the columns currently defined on a table."""
        raise NotImplementedError

    @abc.abstractmethod
    def full_text_search(self, query: str, limit: int = 100) -> list[str]:
        """Return NCT IDs matching the query, most relevant first.

        Args:
            query: Search text in the backend's full-text query syntax.
            limit: Maximum number of IDs to return.

        Raises:
            InvalidQueryError: If the query is blank or cannot be parsed.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def param(self, name: str) -> str:
        """Return the placeholder for a named query parameter."""
        raise NotImplementedError

    @abc.abstractmethod
    def encode_json(self, value: Any) -> Any:
        """Adapt a JSON-compatible value for a JSON column."""
        raise NotImplementedError

    def close(self) -> None:  # noqa: B027
        """Release any connection held by the store."""

    def sync_search_index(self) -> None:  # noqa: B027
        """Bring the full-text index up to date with rows it has never seen."""

    @staticmethod
    def decode_json(value: Any) -> Any:
        """Return a JSON column value as Python data."""
        if isinstance(value, (str, bytes, bytearray)):
            return json.loads(value)
        return value

    # -- Schema --------------------------------------------------------

    def render(self, template_name: str, **kwargs: Any) -> str:
        template = self.jinja_env.get_template(f"{self.dialect}/{template_name}")
        return template.render(
            columns=PROJECTED_COLUMNS,
            indexed_columns=INDEXED_COLUMNS,
            types=self.column_types,
            **kwargs,
        )

    def prepare_schema(self) -> BackfillReport:
        """Create or upgrade the schema, then backfill stale rows.

        Idempotent: safe to call on every start-up.
        """
        self.execute_script(self.render("create_tables.sql"))
        return self.migrate()

    def migrate(self) -> BackfillReport:
        """Upgrade an existing schema to the current projection.

        Indexes are created after the column migration, since they may name
        columns an older database does not have yet.
        """
        self.add_missing_columns()
        self.execute_script(self.render("create_indexes.sql"))
        self.sync_search_index()
        return self.backfill()

    def add_missing_columns(self) -> list[str]:
        """Add columns that an older schema does not have yet."""
        added = []
        with self._write_lock, self.get_conn() as conn:
            present = self.existing_columns(conn, "studies")
            for name, kind in {**PROJECTED_COLUMNS, **BOOKKEEPING_COLUMNS}.items():
                if name not in present:
                    conn.execute(
                        f"ALTER TABLE studies ADD COLUMN {name} {self.column_types[kind]}"
                    )
                    added.append(name)
        if added:
            logger.info("Added columns to studies: %s", ", ".join(added))
        return added

    # -- Studies -------------------------------------------------------

    def _write_children(self, conn: Any, row: StudyRow) -> None:
        p = self.param
        cur = conn.cursor()
        try:
            for table, rows in _child_rows(row).items():
                cur.execute(
                    f"DELETE FROM {table} WHERE nct_id = {p('nct_id')}",
                    {"nct_id": row.nct_id},
                )
                if not rows:
                    continue
                columns = ["nct_id", *CHILD_TABLES[table]]
                cur.executemany(
                    f"INSERT INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join(p(c) for c in columns)}) "
                    "ON CONFLICT DO NOTHING",
                    rows,
                )
        finally:
            cur.close()

    def upsert(self, study: Study) -> None:
        """Insert or replace a study, keyed by its NCT ID.

        The flattened columns, child tables and full-text entry are all
        recomputed in one transaction.
        """
        row = project_study(study)
        values = row.column_values()
        values["raw_json"] = self.encode_json(study.to_payload())
        values["projection_version"] = PROJECTION_VERSION

        columns = list(values)
        updates = ", ".join(
            f"{column} = excluded.{column}" for column in columns if column != "nct_id"
        )
        sql = (
            f"INSERT INTO studies ({', '.join(columns)}, updated_at) "
            f"VALUES ({', '.join(self.param(c) for c in columns)}, CURRENT_TIMESTAMP) "
            f"ON CONFLICT (nct_id) DO UPDATE SET {updates}, updated_at = CURRENT_TIMESTAMP"
        )
        with self._write_lock, self.get_conn() as conn:
            conn.execute(sql, values)
            self._write_children(conn, row)

    def upsert_many(self, studies: Iterable[Study]) -> int:
        """Upsert each study in its own transaction; return how many."""
        count = 0
        for study in studies:
            self.upsert(study)
            count += 1
        return count

    def _parse(self, nct_id: str, raw: Any) -> Study | None:
        try:
            return Study.model_validate(self.decode_json(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Stored payload for %s could not be parsed: %s", nct_id, e)
            return None

    def get(self, nct_id: str) -> Study | None:
        """Return a stored study, or None if it is not in the store."""
        with self.get_conn() as conn:
            found = conn.execute(
                f"SELECT raw_json FROM studies WHERE nct_id = {self.param('nct_id')}",
                {"nct_id": nct_id},
            ).fetchone()
        if found is None:
            return None
        return self._parse(nct_id, found["raw_json"])

    def get_many(self, nct_ids: Iterable[str]) -> dict[str, Study]:
        """Return the stored studies among ``nct_ids``, keyed by NCT ID."""
        sql = f"SELECT raw_json FROM studies WHERE nct_id = {self.param('nct_id')}"
        studies: dict[str, Study] = {}
        with self.get_conn() as conn:
            for nct_id in nct_ids:
                found = conn.execute(sql, {"nct_id": nct_id}).fetchone()
                if found is None:
                    continue
                study = self._parse(nct_id, found["raw_json"])
                if study is not None:
                    studies[nct_id] = study
        return studies

    def count(self) -> int:
        with self.get_conn() as conn:
            return conn.execute("SELECT COUNT(*) AS n FROM studies").fetchone()["n"]

    def stale_ids(self) -> list[str]:
        """NCT IDs whose flattened columns predate the current projection."""
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT nct_id FROM studies "
                "WHERE projection_version IS NULL "
                f"OR projection_version < {self.param('version')} "
                "ORDER BY nct_id",
                {"version": PROJECTION_VERSION},
            ).fetchall()
        return [row["nct_id"] for row in rows]

    def backfill(self) -> BackfillReport:
        """Re-project every stored study whose flattened columns are stale.

        Each study is rewritten in its own transaction, so reads can run
        between them and an interrupted run can simply be repeated. A
        payload that cannot be parsed is skipped and reported.
        """
        report = BackfillReport()
        column_sql = ", ".join(f"{name} = {self.param(name)}" for name in PROJECTED_COLUMNS)
        update_sql = (
            f"UPDATE studies SET {column_sql}, "
            f"projection_version = {self.param('projection_version')} "
            f"WHERE nct_id = {self.param('nct_id')}"
        )
        select_sql = f"SELECT raw_json FROM studies WHERE nct_id = {self.param('nct_id')}"

        for nct_id in self.stale_ids():
            with self._write_lock, self.get_conn() as conn:
                found = conn.execute(select_sql, {"nct_id": nct_id}).fetchone()
                if found is None:
                    continue
                try:
                    study = Study.model_validate(self.decode_json(found["raw_json"]))
                except (ValueError, ValidationError) as e:
                    logger.warning("Skipping backfill of %s: %s", nct_id, e)
                    report.skipped[nct_id] = str(e)
                    continue
                row = project_study(study)
                values = row.column_values()
                values["projection_version"] = PROJECTION_VERSION
                conn.execute(update_sql, values)
                self._write_children(conn, row)
            report.updated += 1

        if report.updated or report.skipped:
            logger.info(
                "Backfill complete: %d updated, %d skipped.",
                report.updated,
                len(report.skipped),
            )
        return report

    # -- Sessions ------------------------------------------------------

    def _insert_session_ids(self, conn: Any, session_id: str, nct_ids: list[str]) -> None:
        if not nct_ids:
            return
        p = self.param
        cur = conn.cursor()
        try:
            cur.executemany(
                "INSERT INTO session_results (session_id, nct_id, position) "
                f"VALUES ({p('session_id')}, {p('nct_id')}, {p('position')})",
                [
                    {"session_id": session_id, "nct_id": nct_id, "position": position}
                    for position, nct_id in enumerate(nct_ids)
                ],
            )
        finally:
            cur.close()

    def _session_row(self, conn: Any, session_id: str) -> Any:
        return conn.execute(
            "SELECT session_id, search_params FROM search_sessions "
            f"WHERE session_id = {self.param('session_id')}",
            {"session_id": session_id},
        ).fetchone()

    def insert_session(
        self, session_id: str, search_params: dict[str, Any], nct_ids: list[str],
    ) -> None:
        """Persist a new session with its parameters and initial IDs."""
        with self._write_lock, self.get_conn() as conn:
            conn.execute(
                "INSERT INTO search_sessions (session_id, search_params) "
                f"VALUES ({self.param('session_id')}, {self.param('search_params')})",
                {
                    "session_id": session_id,
                    "search_params": self.encode_json(search_params),
                },
            )
            self._insert_session_ids(conn, session_id, nct_ids)

    def session_exists(self, session_id: str) -> bool:
        with self.get_conn() as conn:
            return self._session_row(conn, session_id) is not None

    def load_session_params(self, session_id: str) -> dict[str, Any] | None:
        with self.get_conn() as conn:
            found = self._session_row(conn, session_id)
        if found is None:
            return None
        return self.decode_json(found["search_params"])

    def load_session_ids(self, session_id: str) -> list[str] | None:
        """Return a session's IDs in stored order, or None if it is unknown."""
        with self.get_conn() as conn:
            if self._session_row(conn, session_id) is None:
                return None
            rows = conn.execute(
                "SELECT nct_id FROM session_results "
                f"WHERE session_id = {self.param('session_id')} ORDER BY position",
                {"session_id": session_id},
            ).fetchall()
        return [row["nct_id"] for row in rows]

    def replace_session_ids(self, session_id: str, nct_ids: list[str]) -> bool:
        """Replace a session's IDs; return False if the session is unknown."""
        p = self.param("session_id")
        with self._write_lock, self.get_conn() as conn:
            if self._session_row(conn, session_id) is None:
                return False
            conn.execute(
                f"DELETE FROM session_results WHERE session_id = {p}",
                {"session_id": session_id},
            )
            self._insert_session_ids(conn, session_id, nct_ids)
            conn.execute(
                "UPDATE search_sessions SET last_accessed_at = CURRENT_TIMESTAMP "
                f"WHERE session_id = {p}",
                {"session_id": session_id},
            )
        return True

    def touch_session(self, session_id: str) -> None:
        with self._write_lock, self.get_conn() as conn:
            conn.execute(
                "UPDATE search_sessions SET last_accessed_at = CURRENT_TIMESTAMP "
                f"WHERE session_id = {self.param('session_id')}",
                {"session_id": session_id},
            )

