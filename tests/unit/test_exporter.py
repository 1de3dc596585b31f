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

import csv
import json

import pytest

from py_ctgov_refine.errors import UnsupportedFormatError
from py_ctgov_refine.exporter import BLANK, CSV_COLUMNS, Exporter, blank_deep

pytestmark = pytest.mark.unit


@pytest.fixture
def exporter(tmp_path):
    return Exporter(tmp_path / "exports")


def _read_csv(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def test_blank_deep_keeps_zero_and_false():
    value = {"a": None, "b": "", "c": [], "d": 0, "e": False, "f": [None, "x"], "g": {"h": None}}

    assert blank_deep(value) == {
        "a": BLANK,
        "b": BLANK,
        "c": BLANK,
        "d": 0,
        "e": False,
        "f": [BLANK, "x"],
        "g": {"h": BLANK},
    }


def test_csv_export_writes_fixed_columns(exporter, tmp_path, make_study):
    """The CSV has the documented header and BLANK for missing values."""
    studies = [
        make_study(
            conditions=("Asthma", "COPD"),
            secondary_outcomes=("Quality of life",),
        ),
        make_study(
            nct_id="NCT00000002",
            enrollment=None,
            completion_date=None,
            brief_summary=None,
            secondary_outcomes=(),
        ),
    ]

    path = exporter.export(studies, "csv", tmp_path / "out.csv")
    rows = _read_csv(path)

    with open(path, newline="", encoding="utf-8") as f:
        assert next(csv.reader(f)) == CSV_COLUMNS
    assert rows[0]["NCT_ID"] == "NCT00000001"
    assert rows[0]["Phase"] == "PHASE2"
    assert rows[0]["Enrollment"] == "120"
    assert rows[0]["Conditions"] == "Asthma; COPD"
    assert rows[0]["Interventions"] == "DRUG: Drug A"
    assert rows[0]["SecondaryOutcomes"] == "Quality of life"
    assert rows[0]["Locations"] == "Mercy Hospital, Boston, Massachusetts, United States"
    assert rows[0]["Sponsor"] == "Acme Pharma"

    assert rows[1]["Enrollment"] == BLANK
    assert rows[1]["CompletionDate"] == BLANK
    assert rows[1]["Summary"] == BLANK
    assert rows[1]["SecondaryOutcomes"] == BLANK
    assert "" not in rows[1].values()


def test_csv_export_appends_extra_columns(exporter, tmp_path, make_study):
    studies = [
        make_study(healthy_volunteers=False, oversight=False, sex=None),
    ]

    path = exporter.export(
        studies,
        "csv",
        tmp_path / "extra.csv",
        extra_columns=["MinAge", "Sex", "HealthyVolunteers", "IsFDARegulatedDrug", "AgeGroups"],
    )
    row = _read_csv(path)[0]

    assert list(row)[len(CSV_COLUMNS):] == [
        "MinAge",
        "Sex",
        "HealthyVolunteers",
        "IsFDARegulatedDrug",
        "AgeGroups",
    ]
    assert row["MinAge"] == "18 Years"
    assert row["Sex"] == BLANK
    assert row["HealthyVolunteers"] == "No"
    assert row["IsFDARegulatedDrug"] == BLANK
    assert row["AgeGroups"] == "ADULT"


def test_json_export(exporter, tmp_path, make_study):
    """JSON export keeps the source shape, with BLANK for empty values."""
    path = exporter.export(
        [make_study(secondary_outcomes=())], "json", tmp_path / "out.json"
    )

    data = json.loads(path.read_text())
    assert len(data) == 1
    protocol = data[0]["protocolSection"]
    assert protocol["identificationModule"]["nctId"] == "NCT00000001"
    assert protocol["outcomesModule"]["secondaryOutcomes"] == BLANK
    assert data[0]["hasResults"] is False


def test_jsonl_export_writes_one_line_per_study(exporter, tmp_path, make_study):
    studies = [make_study(nct_id=f"NCT0000000{i}") for i in range(1, 4)]

    path = exporter.export(studies, "JSONL", tmp_path / "out.jsonl")

    lines = path.read_text().splitlines()
    assert [json.loads(line)["protocolSection"]["identificationModule"]["nctId"]
            for line in lines] == ["NCT00000001", "NCT00000002", "NCT00000003"]


def test_bare_file_name_goes_under_export_dir(exporter, tmp_path, make_study):
    path = exporter.export([make_study()], "csv", "results.csv")

    assert path == tmp_path / "exports" / "csv" / "results.csv"
    assert path.exists()


def test_nested_destination_creates_parents(exporter, tmp_path, make_study):
    path = exporter.export([make_study()], "json", tmp_path / "a" / "b" / "out.json")
    assert path.exists()


def test_unsupported_format(exporter, make_study):
    with pytest.raises(UnsupportedFormatError):
        exporter.export([make_study()], "xlsx", "out.xlsx")


def test_unknown_extra_column(exporter, make_study):
    with pytest.raises(UnsupportedFormatError):
        exporter.export([make_study()], "csv", "out.csv", extra_columns=["Bogus"])
