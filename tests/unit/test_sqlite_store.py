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

import json
import sqlite3

import pytest

from py_ctgov_refine.errors import InvalidQueryError
from py_ctgov_refine.projection import PROJECTION_VERSION
from py_ctgov_refine.store.sqlite import SqliteStore

pytestmark = pytest.mark.unit


def _scalar(store: SqliteStore, sql: str, params=()):
    return store.conn.execute(sql, params).fetchone()[0]


def _fts_integrity_ok(store: SqliteStore) -> None:
    # Raises sqlite3.DatabaseError if the index and the content table disagree.
    store.conn.execute("INSERT INTO studies_fts(studies_fts) VALUES ('integrity-check')")


def test_prepare_schema_is_idempotent(sqlite_store):
    """Running the schema setup again changes nothing and reports no work."""
    report = sqlite_store.prepare_schema()
    assert report.updated == 0
    assert report.skipped == {}


def test_upsert_and_get_round_trip(sqlite_store, make_payload, make_study):
    study = make_study()
    sqlite_store.upsert(study)

    loaded = sqlite_store.get("NCT00000001")

    assert loaded == study
    assert loaded.to_payload() == make_payload()
    assert sqlite_store.get("NCT99999999") is None


def test_upsert_is_idempotent(sqlite_store, make_study):
    """Upserting twice leaves one row, one index entry and no duplicate children."""
    study = make_study(conditions=("Asthma", "COPD"))
    sqlite_store.upsert(study)
    first = dict(sqlite_store.conn.execute(
        "SELECT * FROM studies WHERE nct_id = 'NCT00000001'"
    ).fetchone())

    sqlite_store.upsert(study)
    second = dict(sqlite_store.conn.execute(
        "SELECT * FROM studies WHERE nct_id = 'NCT00000001'"
    ).fetchone())

    first.pop("updated_at")
    second.pop("updated_at")
    assert first == second
    assert sqlite_store.count() == 1
    assert _scalar(sqlite_store, "SELECT COUNT(*) FROM studies_fts_docsize") == 1
    assert _scalar(sqlite_store, "SELECT COUNT(*) FROM conditions") == 2
    assert sqlite_store.full_text_search("asthma") == ["NCT00000001"]
    _fts_integrity_ok(sqlite_store)


def test_upsert_replaces_projection_and_children(sqlite_store, make_study):
    sqlite_store.upsert(make_study(title="Inhaled therapy", conditions=("Asthma",)))
    sqlite_store.upsert(make_study(title="Oral therapy", conditions=("COPD",)))

    assert _scalar(
        sqlite_store, "SELECT brief_title FROM studies WHERE nct_id = 'NCT00000001'"
    ) == "Oral therapy"
    conditions = [r[0] for r in sqlite_store.conn.execute("SELECT condition FROM conditions")]
    assert conditions == ["COPD"]
    assert sqlite_store.full_text_search("inhaled") == []
    assert sqlite_store.full_text_search("oral") == ["NCT00000001"]
    _fts_integrity_ok(sqlite_store)


def test_projected_columns_are_stored(sqlite_store, make_study):
    sqlite_store.upsert(make_study(allocation="Randomized", has_results=True))
    row = sqlite_store.conn.execute(
        "SELECT allocation, has_results, projection_version FROM studies"
    ).fetchone()

    assert row["allocation"] == "RANDOMIZED"
    assert row["has_results"] == 1
    assert row["projection_version"] == PROJECTION_VERSION


def test_get_many_skips_missing(sqlite_store, make_study):
    sqlite_store.upsert_many(
        [make_study(nct_id="NCT00000001"), make_study(nct_id="NCT00000002")]
    )

    found = sqlite_store.get_many(["NCT00000002", "NCT00000404", "NCT00000001"])

    assert set(found) == {"NCT00000001", "NCT00000002"}


def test_full_text_search_matches_and_limits(sqlite_store, make_study):
    sqlite_store.upsert_many(
        [
            make_study(nct_id="NCT00000001", title="Asthma inhaler trial"),
            make_study(nct_id="NCT00000002", title="Diabetes trial", brief_summary=None),
            make_study(nct_id="NCT00000003", title="Severe asthma biologic"),
        ]
    )

    assert set(sqlite_store.full_text_search("asthma")) == {"NCT00000001", "NCT00000003"}
    assert sqlite_store.full_text_search("diabetes") == ["NCT00000002"]
    assert len(sqlite_store.full_text_search("trial", limit=1)) == 1


def test_full_text_search_ranks_denser_matches_first(sqlite_store, make_study):
    sqlite_store.upsert_many(
        [
            make_study(
                nct_id="NCT00000001",
                title="Heart failure registry",
                brief_summary="Observational follow-up of outpatients.",
            ),
            make_study(
                nct_id="NCT00000002",
                title="Heart failure in heart transplant recipients",
                brief_summary="Heart function after heart transplant.",
            ),
        ]
    )

    assert sqlite_store.full_text_search("heart") == ["NCT00000002", "NCT00000001"]


@pytest.mark.parametrize("query", ["", "   ", '"unterminated', "asthma AND"])
def test_full_text_search_rejects_bad_queries(sqlite_store, query):
    with pytest.raises(InvalidQueryError):
        sqlite_store.full_text_search(query)


def test_backfill_skips_unparsable_rows(sqlite_store, make_payload):
    """A stale row with a broken payload is reported; the others are re-projected."""
    good = make_payload(nct_id="NCT00000001", allocation="Non-Randomized")
    with sqlite_store.get_conn() as conn:
        conn.execute(
            "INSERT INTO studies (nct_id, brief_title, raw_json, projection_version) "
            "VALUES (?, ?, ?, NULL)",
            ("NCT00000001", "stale", json.dumps(good)),
        )
        conn.execute(
            "INSERT INTO studies (nct_id, brief_title, raw_json, projection_version) "
            "VALUES (?, ?, ?, ?)",
            ("NCT00000002", "broken", "{not json", PROJECTION_VERSION - 1),
        )

    report = sqlite_store.backfill()

    assert report.updated == 1
    assert list(report.skipped) == ["NCT00000002"]
    row = sqlite_store.conn.execute(
        "SELECT brief_title, allocation, projection_version FROM studies "
        "WHERE nct_id = 'NCT00000001'"
    ).fetchone()
    assert row["allocation"] == "NON_RANDOMIZED"
    assert row["projection_version"] == PROJECTION_VERSION
    assert sqlite_store.stale_ids() == ["NCT00000002"]
    assert sqlite_store.get("NCT00000002") is None
    _fts_integrity_ok(sqlite_store)

    # A second run only retries the broken row.
    again = sqlite_store.backfill()
    assert again.updated == 0
    assert list(again.skipped) == ["NCT00000002"]


def test_prepare_schema_migrates_legacy_database(tmp_path, make_payload):
    """An old database without projected columns or an FTS index is upgraded."""
    db_path = tmp_path / "legacy.db"
    legacy = sqlite3.connect(db_path)
    legacy.execute(
        "CREATE TABLE studies (nct_id TEXT PRIMARY KEY, brief_title TEXT, raw_json TEXT NOT NULL)"
    )
    legacy.execute(
        "INSERT INTO studies VALUES (?, ?, ?)",
        ("NCT00000001", "Legacy asthma study", json.dumps(make_payload())),
    )
    legacy.commit()
    legacy.close()

    store = SqliteStore(db_path)
    try:
        report = store.prepare_schema()

        assert report.updated == 1
        row = store.conn.execute(
            "SELECT overall_status, projection_version FROM studies"
        ).fetchone()
        assert row["overall_status"] == "RECRUITING"
        assert row["projection_version"] == PROJECTION_VERSION
        assert store.full_text_search("asthma") == ["NCT00000001"]
        _fts_integrity_ok(store)
    finally:
        store.close()


def test_session_persistence(sqlite_store):
    sqlite_store.insert_session("tok", {"condition": "asthma"}, ["NCT2", "NCT1", "NCT3"])

    assert sqlite_store.session_exists("tok")
    assert not sqlite_store.session_exists("other")
    assert sqlite_store.load_session_ids("tok") == ["NCT2", "NCT1", "NCT3"]
    assert sqlite_store.load_session_params("tok") == {"condition": "asthma"}

    assert sqlite_store.replace_session_ids("tok", ["NCT3"])
    assert sqlite_store.load_session_ids("tok") == ["NCT3"]
    assert not sqlite_store.replace_session_ids("other", ["NCT1"])
    assert sqlite_store.load_session_ids("other") is None


def test_failed_write_rolls_back(sqlite_store):
    with pytest.raises(RuntimeError):
        with sqlite_store.get_conn() as conn:
            conn.execute(
                "INSERT INTO search_sessions (session_id, search_params) VALUES ('tok', '{}')"
            )
            raise RuntimeError("boom")

    assert not sqlite_store.session_exists("tok")
