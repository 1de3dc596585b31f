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
"""Evaluates refinement criteria against studies.

Every predicate works on the flattened row produced by ``project_study``, so
filtering sees exactly the values the store indexes. A study is kept only if
all populated predicates hold. Where a predicate needs a value that the study
never reported (an enrollment count, a date, the oversight module, the
healthy-volunteers flag) the study is excluded.
"""

from collections.abc import Callable, Iterable

from .models.filters import FilterCriteria
from .models.study import Study
from .normalize import canonicalize, parse_age_years
from .projection import StudyRow, project_study

Predicate = Callable[[StudyRow, FilterCriteria], bool]


def _contains(haystack: Iterable[str | None], needle: str) -> bool:
    needle = needle.lower()
    return any(value and needle in value.lower() for value in haystack)


def _compact(value: str | None) -> str | None:
    """Canonical form with separators removed, so "Phase 2" equals "PHASE2"."""
    canonical = canonicalize(value)
    return canonical.replace("_", "") if canonical else None


def _location_country(row: StudyRow, c: FilterCriteria) -> bool:
    return _contains((loc.country for loc in row.locations), c.location_country)


def _location_state(row: StudyRow, c: FilterCriteria) -> bool:
    return _contains((loc.state for loc in row.locations), c.location_state)


def _location_city(row: StudyRow, c: FilterCriteria) -> bool:
    return _contains((loc.city for loc in row.locations), c.location_city)


def _keyword(row: StudyRow, c: FilterCriteria) -> bool:
    return _contains(row.keywords, c.keyword)


def _condition(row: StudyRow, c: FilterCriteria) -> bool:
    return _contains(row.conditions, c.condition)


def _enrollment_min(row: StudyRow, c: FilterCriteria) -> bool:
    return row.enrollment_count is not None and row.enrollment_count >= c.enrollment_min


def _enrollment_max(row: StudyRow, c: FilterCriteria) -> bool:
    return row.enrollment_count is not None and row.enrollment_count <= c.enrollment_max


# ISO 8601 dates order lexicographically the same way they order in time.
def _start_date_after(row: StudyRow, c: FilterCriteria) -> bool:
    return row.start_date is not None and row.start_date >= c.start_date_after


def _start_date_before(row: StudyRow, c: FilterCriteria) -> bool:
    return row.start_date is not None and row.start_date <= c.start_date_before


def _completion_date_after(row: StudyRow, c: FilterCriteria) -> bool:
    return row.completion_date is not None and row.completion_date >= c.completion_date_after


def _completion_date_before(row: StudyRow, c: FilterCriteria) -> bool:
    return row.completion_date is not None and row.completion_date <= c.completion_date_before


def _enum(column: str, field: str) -> Predicate:
    def predicate(row: StudyRow, c: FilterCriteria) -> bool:
        expected = canonicalize(getattr(c, field))
        return expected is not None and getattr(row, column) == expected

    predicate.__name__ = f"_{field}"
    return predicate


def _intervention_type(row: StudyRow, c: FilterCriteria) -> bool:
    expected = canonicalize(c.intervention_type)
    return any(
        canonicalize(item.intervention_type) == expected for item in row.interventions
    )


def _phase(row: StudyRow, c: FilterCriteria) -> bool:
    expected = _compact(c.phase)
    return any(_compact(phase) == expected for phase in row.phases)


def _has_results(row: StudyRow, c: FilterCriteria) -> bool:
    return row.has_results is c.has_results


def _healthy_volunteers(row: StudyRow, c: FilterCriteria) -> bool:
    return row.healthy_volunteers is not None and row.healthy_volunteers is c.healthy_volunteers


def _fda_regulated(row: StudyRow, c: FilterCriteria) -> bool:
    # Both flags are None only when the oversight module is missing.
    if row.is_fda_regulated_drug is None and row.is_fda_regulated_device is None:
        return False
    regulated = bool(row.is_fda_regulated_drug) or bool(row.is_fda_regulated_device)
    return regulated is c.fda_regulated


def _min_age(row: StudyRow, c: FilterCriteria) -> bool:
    wanted = parse_age_years(c.min_age)
    if wanted is None:
        return True
    try:
        study_min = parse_age_years(row.minimum_age)
    except ValueError:
        return False
    return (study_min or 0.0) >= wanted


def _max_age(row: StudyRow, c: FilterCriteria) -> bool:
    wanted = parse_age_years(c.max_age)
    if wanted is None:
        return True
    try:
        study_max = parse_age_years(row.maximum_age)
    except ValueError:
        return False
    return study_max is not None and study_max <= wanted


def _age_groups(row: StudyRow, c: FilterCriteria) -> bool:
    wanted = {canonicalize(group) for group in c.age_groups}
    return not wanted.isdisjoint(row.std_ages)


# Criteria field name -> predicate. Evaluated only when the field is set.
PREDICATES: dict[str, Predicate] = {
    "location_country": _location_country,
    "location_state": _location_state,
    "location_city": _location_city,
    "keyword": _keyword,
    "condition": _condition,
    "enrollment_min": _enrollment_min,
    "enrollment_max": _enrollment_max,
    "start_date_after": _start_date_after,
    "start_date_before": _start_date_before,
    "completion_date_after": _completion_date_after,
    "completion_date_before": _completion_date_before,
    "intervention_type": _intervention_type,
    "study_type": _enum("study_type", "study_type"),
    "sex": _enum("sex", "sex"),
    "sponsor_class": _enum("lead_sponsor_class", "sponsor_class"),
    "allocation": _enum("allocation", "allocation"),
    "intervention_model": _enum("intervention_model", "intervention_model"),
    "primary_purpose": _enum("primary_purpose", "primary_purpose"),
    "masking": _enum("masking", "masking"),
    "overall_status": _enum("overall_status", "overall_status"),
    "phase": _phase,
    "has_results": _has_results,
    "healthy_volunteers": _healthy_volunteers,
    "fda_regulated": _fda_regulated,
    "min_age": _min_age,
    "max_age": _max_age,
    "age_groups": _age_groups,
}


def _active_predicates(criteria: FilterCriteria) -> list[Predicate]:
    return [
        predicate
        for field, predicate in PREDICATES.items()
        if getattr(criteria, field) not in (None, [])
    ]


def matches(study: Study, criteria: FilterCriteria) -> bool:
    """Return True if the study satisfies every populated criterion."""
    predicates = _active_predicates(criteria)
    if not predicates:
        return True
    row = project_study(study)
    return all(predicate(row, criteria) for predicate in predicates)


def filter_studies(studies: Iterable[Study], criteria: FilterCriteria) -> list[Study]:
    """Return the studies that match the criteria, in their original order."""
    predicates = _active_predicates(criteria)
    if not predicates:
        return list(studies)
    kept = []
    for study in studies:
        row = project_study(study)
        if all(predicate(row, criteria) for predicate in predicates):
            kept.append(study)
    return kept
