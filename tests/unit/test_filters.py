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

import pytest
from pydantic import ValidationError

from py_ctgov_refine.filters import PREDICATES, filter_studies, matches
from py_ctgov_refine.models.filters import FilterCriteria

pytestmark = pytest.mark.unit


def test_every_criteria_field_has_a_predicate():
    assert set(PREDICATES) == set(FilterCriteria.model_fields)


def test_empty_criteria_matches_everything(make_study):
    studies = [make_study(nct_id=f"NCT0000000{i}") for i in range(3)]
    criteria = FilterCriteria()

    assert criteria.is_empty()
    assert all(matches(study, criteria) for study in studies)
    assert filter_studies(studies, criteria) == studies


@pytest.mark.parametrize("stored", ["Randomized", "RANDOMIZED"])
def test_enumeration_normalization(make_study, stored):
    """allocation=RANDOMIZED matches both spellings of the stored value."""
    study = make_study(allocation=stored)
    assert matches(study, FilterCriteria(allocation="RANDOMIZED"))
    assert not matches(study, FilterCriteria(allocation="NON_RANDOMIZED"))


def test_enumeration_ignores_separators(make_study):
    study = make_study(intervention_model="PARALLEL_ASSIGNMENT")
    assert matches(study, FilterCriteria(intervention_model="Parallel Assignment"))


@pytest.mark.parametrize(
    "field, value",
    [
        ("study_type", "interventional"),
        ("sex", "All"),
        ("sponsor_class", "industry"),
        ("primary_purpose", "Treatment"),
        ("masking", "double"),
        ("overall_status", "Recruiting"),
        ("intervention_type", "Drug"),
        ("phase", "Phase 2"),
    ],
)
def test_enumeration_fields_match(make_study, field, value):
    assert matches(make_study(), FilterCriteria(**{field: value}))


def test_missing_enumeration_fails_closed(make_study):
    study = make_study(masking=None)
    assert not matches(study, FilterCriteria(masking="NONE"))


def test_fda_regulated_missing_oversight_fails_closed(make_study):
    """A study without the oversight module is excluded whenever the flag is given."""
    study = make_study(oversight=False)

    assert not matches(study, FilterCriteria(fda_regulated=True))
    assert not matches(study, FilterCriteria(fda_regulated=False))
    assert matches(study, FilterCriteria())


def test_fda_regulated_is_drug_or_device(make_study):
    device_only = make_study(fda_drug=False, fda_device=True)
    neither = make_study(fda_drug=False, fda_device=False)

    assert matches(device_only, FilterCriteria(fda_regulated=True))
    assert not matches(neither, FilterCriteria(fda_regulated=True))
    assert matches(neither, FilterCriteria(fda_regulated=False))


def test_boolean_flags(make_study):
    with_results = make_study(has_results=True, healthy_volunteers=True)
    without = make_study(has_results=False, healthy_volunteers=None)

    assert matches(with_results, FilterCriteria(has_results=True))
    assert not matches(without, FilterCriteria(has_results=True))
    assert matches(without, FilterCriteria(has_results=False))
    assert matches(with_results, FilterCriteria(healthy_volunteers=True))
    # Not reported is not the same as "no".
    assert not matches(without, FilterCriteria(healthy_volunteers=False))


def test_location_substring_any_site(make_study):
    study = make_study(
        locations=(
            ("Mercy Hospital", "Boston", "Massachusetts", "United States"),
            ("Charite", "Berlin", "Berlin", "Germany"),
        )
    )
    assert matches(study, FilterCriteria(location_country="germ"))
    assert matches(study, FilterCriteria(location_state="MASSACHUSETTS"))
    assert matches(study, FilterCriteria(location_city="bost"))
    assert not matches(study, FilterCriteria(location_country="France"))


def test_keyword_and_condition_substring(make_study):
    study = make_study(keywords=("Metered Dose Inhaler",), conditions=("Severe Asthma",))
    assert matches(study, FilterCriteria(keyword="dose inhaler"))
    assert matches(study, FilterCriteria(condition="asthma"))
    assert not matches(study, FilterCriteria(keyword="nebulizer"))


def test_enrollment_bounds_are_inclusive(make_study):
    study = make_study(enrollment=100)
    assert matches(study, FilterCriteria(enrollment_min=100, enrollment_max=100))
    assert not matches(study, FilterCriteria(enrollment_min=101))
    assert not matches(study, FilterCriteria(enrollment_max=99))


def test_enrollment_missing_fails_closed(make_study):
    study = make_study(enrollment=None)
    assert not matches(study, FilterCriteria(enrollment_min=0))


def test_date_ranges(make_study):
    study = make_study(start_date="2020-01-15", completion_date="2023-06")
    assert matches(study, FilterCriteria(start_date_after="2020-01-15"))
    assert matches(study, FilterCriteria(start_date_before="2020-12-31"))
    assert not matches(study, FilterCriteria(start_date_after="2021-01-01"))
    assert matches(study, FilterCriteria(completion_date_before="2023-12-31"))
    assert not matches(study, FilterCriteria(completion_date_after="2024-01-01"))


def test_missing_date_fails_closed(make_study):
    study = make_study(start_date=None)
    assert not matches(study, FilterCriteria(start_date_after="1900-01-01"))


def test_min_age_compares_numerically(make_study):
    """A two-digit age is not smaller than a one-digit one."""
    adults = make_study(minimum_age="18 Years")
    children = make_study(minimum_age="9 Years")

    assert matches(adults, FilterCriteria(min_age="9 Years"))
    assert not matches(children, FilterCriteria(min_age="18 Years"))


def test_max_age_compares_numerically(make_study):
    study = make_study(maximum_age="100 Years")
    assert not matches(study, FilterCriteria(max_age="65 Years"))
    assert matches(study, FilterCriteria(max_age="120 Years"))


def test_age_missing_bounds(make_study):
    """No minimum counts as zero; no maximum never satisfies a max_age bound."""
    study = make_study(minimum_age=None, maximum_age=None)
    assert not matches(study, FilterCriteria(min_age="18 Years"))
    assert matches(study, FilterCriteria(min_age="0 Years"))
    assert not matches(study, FilterCriteria(max_age="65 Years"))


def test_age_not_applicable_is_no_constraint(make_study):
    study = make_study(minimum_age=None)
    assert matches(study, FilterCriteria(min_age="N/A"))


def test_unparseable_stored_age_is_excluded(make_study):
    study = make_study(minimum_age="Eighteen")
    assert not matches(study, FilterCriteria(min_age="1 Year"))


def test_invalid_age_criteria_rejected():
    with pytest.raises(ValidationError):
        FilterCriteria(min_age="adult")


def test_age_groups_intersect(make_study):
    study = make_study(std_ages=("ADULT", "OLDER_ADULT"))
    assert matches(study, FilterCriteria(age_groups=["CHILD", "older adult"]))
    assert not matches(study, FilterCriteria(age_groups=["CHILD"]))


def test_camel_case_aliases_and_unknown_fields():
    criteria = FilterCriteria.model_validate({"hasResults": True, "sponsorClass": "NIH"})
    assert criteria.has_results is True
    assert criteria.sponsor_class == "NIH"
    with pytest.raises(ValidationError):
        FilterCriteria.model_validate({"colour": "blue"})


def test_filter_is_order_preserving_and_idempotent(make_study):
    """filter(filter(S, C), C) == filter(S, C)."""
    studies = [
        make_study(nct_id="NCT00000003", has_results=True, sponsor_class="INDUSTRY"),
        make_study(nct_id="NCT00000001", has_results=False),
        make_study(nct_id="NCT00000002", has_results=True, sponsor_class="NIH"),
        make_study(nct_id="NCT00000004", has_results=True, sponsor_class="INDUSTRY"),
    ]
    criteria = FilterCriteria(has_results=True, sponsor_class="INDUSTRY")

    once = filter_studies(studies, criteria)

    assert [s.nct_id for s in once] == ["NCT00000003", "NCT00000004"]
    assert filter_studies(once, criteria) == once
