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

from pathlib import Path
from typing import Any

import pytest

from py_ctgov_refine.config import Settings
from py_ctgov_refine.models.study import Study
from py_ctgov_refine.store.sqlite import SqliteStore


def build_payload(
    nct_id: str = "NCT00000001",
    title: str = "A Study of Drug A in Asthma",
    official_title: str | None = None,
    status: str = "RECRUITING",
    study_type: str = "INTERVENTIONAL",
    phases: tuple[str, ...] = ("PHASE2",),
    enrollment: int | None = 120,
    start_date: str | None = "2020-01-15",
    completion_date: str | None = "2023-06-30",
    has_results: bool = False,
    brief_summary: str | None = "Evaluates drug A in adults with moderate asthma.",
    conditions: tuple[str, ...] = ("Asthma",),
    keywords: tuple[str, ...] = ("inhaler",),
    interventions: tuple[tuple[str, str], ...] = (("DRUG", "Drug A"),),
    allocation: str | None = "RANDOMIZED",
    intervention_model: str | None = "PARALLEL",
    primary_purpose: str | None = "TREATMENT",
    masking: str | None = "DOUBLE",
    sex: str | None = "ALL",
    minimum_age: str | None = "18 Years",
    maximum_age: str | None = "65 Years",
    std_ages: tuple[str, ...] = ("ADULT",),
    healthy_volunteers: bool | None = False,
    sponsor: str = "Acme Pharma",
    sponsor_class: str | None = "INDUSTRY",
    oversight: bool = True,
    fda_drug: bool | None = True,
    fda_device: bool | None = False,
    locations: tuple[tuple[str, str, str, str], ...] = (
        ("Mercy Hospital", "Boston", "Massachusetts", "United States"),
    ),
    primary_outcomes: tuple[str, ...] = ("Change in FEV1",),
    secondary_outcomes: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Build a study payload in the shape returned by the source API.

    Optional values passed as None are left out of the payload, and
    ``oversight=False`` leaves out the whole oversight module.
    """
    status_module: dict[str, Any] = {"overallStatus": status}
    if start_date:
        status_module["startDateStruct"] = {"date": start_date, "type": "ACTUAL"}
    if completion_date:
        status_module["completionDateStruct"] = {"date": completion_date, "type": "ESTIMATED"}

    design_info = {
        key: value
        for key, value in {
            "allocation": allocation,
            "interventionModel": intervention_model,
            "primaryPurpose": primary_purpose,
        }.items()
        if value is not None
    }
    if masking is not None:
        design_info["maskingInfo"] = {"masking": masking}
    design: dict[str, Any] = {
        "studyType": study_type,
        "phases": list(phases),
        "designInfo": design_info,
    }
    if enrollment is not None:
        design["enrollmentInfo"] = {"count": enrollment, "type": "ESTIMATED"}

    eligibility: dict[str, Any] = {
        "eligibilityCriteria": "Inclusion Criteria:\n\n* Physician-diagnosed asthma",
        "stdAges": list(std_ages),
    }
    for key, value in (
        ("sex", sex),
        ("minimumAge", minimum_age),
        ("maximumAge", maximum_age),
        ("healthyVolunteers", healthy_volunteers),
    ):
        if value is not None:
            eligibility[key] = value

    lead_sponsor: dict[str, Any] = {"name": sponsor}
    if sponsor_class is not None:
        lead_sponsor["class"] = sponsor_class

    protocol: dict[str, Any] = {
        "identificationModule": {"nctId": nct_id, "briefTitle": title},
        "statusModule": status_module,
        "conditionsModule": {"conditions": list(conditions), "keywords": list(keywords)},
        "designModule": design,
        "armsInterventionsModule": {
            "interventions": [{"type": t, "name": n} for t, n in interventions],
        },
        "eligibilityModule": eligibility,
        "contactsLocationsModule": {
            "locations": [
                {"facility": f, "city": c, "state": s, "country": country}
                for f, c, s, country in locations
            ],
        },
        "sponsorCollaboratorsModule": {"leadSponsor": lead_sponsor},
        "outcomesModule": {
            "primaryOutcomes": [{"measure": m, "timeFrame": "12 weeks"} for m in primary_outcomes],
            "secondaryOutcomes": [
                {"measure": m, "timeFrame": "24 weeks"} for m in secondary_outcomes
            ],
        },
    }
    if official_title is not None:
        protocol["identificationModule"]["officialTitle"] = official_title
    if brief_summary is not None:
        protocol["descriptionModule"] = {"briefSummary": brief_summary}
    if oversight:
        protocol["oversightModule"] = {
            key: value
            for key, value in {
                "isFdaRegulatedDrug": fda_drug,
                "isFdaRegulatedDevice": fda_device,
            }.items()
            if value is not None
        }
    return {"protocolSection": protocol, "hasResults": has_results}


@pytest.fixture
def make_payload():
    """Factory fixture for raw study payloads."""
    return build_payload


@pytest.fixture
def make_study():
    """Factory fixture for validated Study models."""

    def factory(**kwargs: Any) -> Study:
        return Study.model_validate(build_payload(**kwargs))

    return factory


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings that keep every file under a temporary directory."""
    return Settings(
        sqlite_path=tmp_path / "data" / "trials.db",
        cache_dir=tmp_path / "cache",
        audit_dir=tmp_path / "audit",
        export_dir=tmp_path / "exports",
        api_base_url="https://clinicaltrials.test/api/v2",
        max_retries=3,
        retry_delay=0.0,
    )


@pytest.fixture
def sqlite_store(tmp_path: Path):
    """A SqliteStore with its schema prepared, closed after the test."""
    store = SqliteStore(tmp_path / "store.db")
    store.prepare_schema()
    yield store
    store.close()
