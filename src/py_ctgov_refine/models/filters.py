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
"""Defines the refinement criteria applied to the studies of a session."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..normalize import parse_age_years

ISO_DATE_PATTERN = r"^\d{4}(-\d{2}(-\d{2})?)?$"


class FilterCriteria(BaseModel):
    """A set of optional predicates for one refinement call.

    A field left as ``None`` places no constraint on that dimension. Field
    names accept both snake_case and the camelCase used by front ends
    (``locationCountry``, ``fdaRegulated``, ...).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    # Location and free-text containment
    location_country: str | None = None
    location_state: str | None = None
    location_city: str | None = None
    keyword: str | None = None
    condition: str | None = None

    # Enrollment
    enrollment_min: int | None = Field(default=None, ge=0)
    enrollment_max: int | None = Field(default=None, ge=0)

    # Dates, compared as ISO 8601 strings
    start_date_after: str | None = Field(default=None, pattern=ISO_DATE_PATTERN)
    start_date_before: str | None = Field(default=None, pattern=ISO_DATE_PATTERN)
    completion_date_after: str | None = Field(default=None, pattern=ISO_DATE_PATTERN)
    completion_date_before: str | None = Field(default=None, pattern=ISO_DATE_PATTERN)

    # Enumerations
    intervention_type: str | None = None
    study_type: str | None = None
    sex: str | None = None
    sponsor_class: str | None = None
    allocation: str | None = None
    intervention_model: str | None = None
    primary_purpose: str | None = None
    masking: str | None = None
    overall_status: str | None = None
    phase: str | None = None

    # Flags
    has_results: bool | None = None
    healthy_volunteers: bool | None = None
    fda_regulated: bool | None = None

    # Eligible ages
    min_age: str | None = None
    max_age: str | None = None
    age_groups: list[str] | None = None

    @field_validator("min_age", "max_age")
    @classmethod
    def _check_age(cls, value: str | None) -> str | None:
        if value is not None:
            # Raises ValueError for text that is not "<N> <unit>" or "N/A".
            parse_age_years(value)
        return value

    def is_empty(self) -> bool:
        """Return True when no predicate is set."""
        return not self.model_dump(exclude_none=True)
