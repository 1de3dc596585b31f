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
"""Projects a raw study payload onto the flattened columns of the store.

``project_study`` is the only place that decides which payload values are
promoted to queryable columns. It is pure, so the store can run it at upsert
time and re-run it over old rows during a backfill. Whenever the set of
promoted values or the way they are derived changes, bump
``PROJECTION_VERSION`` so that existing rows are re-projected.
"""

from pydantic import BaseModel, ConfigDict

from .models.study import Study
from .normalize import canonicalize

PROJECTION_VERSION = 2

# Promoted columns of the studies table and their portable type. The DDL
# templates and the column migration both read this mapping.
PROJECTED_COLUMNS: dict[str, str] = {
    "brief_title": "text",
    "official_title": "text",
    "acronym": "text",
    "overall_status": "text",
    "study_type": "text",
    "phase": "text",
    "enrollment_count": "integer",
    "enrollment_type": "text",
    "start_date": "text",
    "start_date_type": "text",
    "primary_completion_date": "text",
    "completion_date": "text",
    "last_update_posted": "text",
    "has_results": "boolean",
    "brief_summary": "text",
    "detailed_description": "text",
    "eligibility_criteria": "text",
    "sex": "text",
    "minimum_age": "text",
    "maximum_age": "text",
    "healthy_volunteers": "boolean",
    "lead_sponsor_name": "text",
    "lead_sponsor_class": "text",
    "allocation": "text",
    "intervention_model": "text",
    "primary_purpose": "text",
    "masking": "text",
    "is_fda_regulated_drug": "boolean",
    "is_fda_regulated_device": "boolean",
    "age_groups": "text",
}

# Columns indexed for filtering queries.
INDEXED_COLUMNS = [
    "overall_status",
    "phase",
    "start_date",
    "study_type",
    "lead_sponsor_class",
    "allocation",
    "intervention_model",
    "primary_purpose",
    "masking",
    "is_fda_regulated_drug",
    "is_fda_regulated_device",
]


class InterventionRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    intervention_type: str
    intervention_name: str
    description: str | None = None


class LocationRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    facility: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    status: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class OutcomeRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    measure: str
    description: str | None = None
    time_frame: str | None = None


class StudyRow(BaseModel):
    """The flattened form of one study."""

    model_config = ConfigDict(frozen=True)

    nct_id: str
    brief_title: str
    official_title: str | None = None
    acronym: str | None = None
    overall_status: str | None = None
    study_type: str | None = None
    phase: str | None = None
    enrollment_count: int | None = None
    enrollment_type: str | None = None
    start_date: str | None = None
    start_date_type: str | None = None
    primary_completion_date: str | None = None
    completion_date: str | None = None
    last_update_posted: str | None = None
    has_results: bool = False
    brief_summary: str | None = None
    detailed_description: str | None = None
    eligibility_criteria: str | None = None
    sex: str | None = None
    minimum_age: str | None = None
    maximum_age: str | None = None
    healthy_volunteers: bool | None = None
    lead_sponsor_name: str | None = None
    lead_sponsor_class: str | None = None
    allocation: str | None = None
    intervention_model: str | None = None
    primary_purpose: str | None = None
    masking: str | None = None
    is_fda_regulated_drug: bool | None = None
    is_fda_regulated_device: bool | None = None
    age_groups: str | None = None

    phases: tuple[str, ...] = ()
    std_ages: tuple[str, ...] = ()
    conditions: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    interventions: tuple[InterventionRow, ...] = ()
    locations: tuple[LocationRow, ...] = ()
    primary_outcomes: tuple[OutcomeRow, ...] = ()
    secondary_outcomes: tuple[OutcomeRow, ...] = ()

    def column_values(self) -> dict[str, object]:
        """Values for the promoted columns, keyed by column name."""
        values = self.model_dump(include=set(PROJECTED_COLUMNS))
        values["nct_id"] = self.nct_id
        return values


def _unique(values):
    """Drop duplicates, keeping the first occurrence."""
    return tuple(dict.fromkeys(values))


def project_study(study: Study) -> StudyRow:
    """Derive the flattened row for a study from its payload."""
    protocol = study.protocol_section
    identification = protocol.identification_module
    status = protocol.status_module
    description = protocol.description_module
    conditions = protocol.conditions_module
    design = protocol.design_module
    design_info = design.design_info if design else None
    enrollment = design.enrollment_info if design else None
    arms = protocol.arms_interventions_module
    eligibility = protocol.eligibility_module
    contacts = protocol.contacts_locations_module
    sponsor = protocol.sponsor_collaborators_module
    lead_sponsor = sponsor.lead_sponsor if sponsor else None
    oversight = protocol.oversight_module

    phases = _unique(
        phase for phase in (canonicalize(p) for p in (design.phases if design else []))
        if phase
    )
    std_ages = _unique(
        age for age in (canonicalize(a) for a in (eligibility.std_ages if eligibility else []))
        if age
    )

    def date_of(struct):
        return struct.date if struct else None

    def date_type_of(struct):
        return struct.type if struct else None

    return StudyRow(
        nct_id=identification.nct_id,
        brief_title=identification.brief_title,
        official_title=identification.official_title,
        acronym=identification.acronym,
        overall_status=canonicalize(status.overall_status),
        study_type=canonicalize(design.study_type) if design else None,
        phase=", ".join(phases) or None,
        enrollment_count=enrollment.count if enrollment else None,
        enrollment_type=enrollment.type if enrollment else None,
        start_date=date_of(status.start_date_struct),
        start_date_type=date_type_of(status.start_date_struct),
        primary_completion_date=date_of(status.primary_completion_date_struct),
        completion_date=date_of(status.completion_date_struct),
        last_update_posted=date_of(status.last_update_post_date_struct),
        has_results=bool(study.has_results),
        brief_summary=description.brief_summary if description else None,
        detailed_description=description.detailed_description if description else None,
        eligibility_criteria=eligibility.eligibility_criteria if eligibility else None,
        sex=canonicalize(eligibility.sex) if eligibility else None,
        minimum_age=eligibility.minimum_age if eligibility else None,
        maximum_age=eligibility.maximum_age if eligibility else None,
        healthy_volunteers=eligibility.healthy_volunteers if eligibility else None,
        lead_sponsor_name=lead_sponsor.name if lead_sponsor else None,
        lead_sponsor_class=canonicalize(lead_sponsor.class_) if lead_sponsor else None,
        allocation=canonicalize(design_info.allocation) if design_info else None,
        intervention_model=(
            canonicalize(design_info.intervention_model) if design_info else None
        ),
        primary_purpose=canonicalize(design_info.primary_purpose) if design_info else None,
        masking=(
            canonicalize(design_info.masking_info.masking)
            if design_info and design_info.masking_info
            else None
        ),
        # An absent oversight module stays None so that "not reported" can be
        # told apart from "reported as not regulated".
        is_fda_regulated_drug=bool(oversight.is_fda_regulated_drug) if oversight else None,
        is_fda_regulated_device=bool(oversight.is_fda_regulated_device) if oversight else None,
        age_groups=",".join(std_ages) or None,
        phases=phases,
        std_ages=std_ages,
        conditions=_unique(conditions.conditions) if conditions else (),
        keywords=_unique(conditions.keywords) if conditions else (),
        interventions=_unique(
            InterventionRow(
                intervention_type=item.type,
                intervention_name=item.name,
                description=item.description,
            )
            for item in (arms.interventions if arms else [])
        ),
        locations=_unique(
            LocationRow(
                facility=loc.facility,
                city=loc.city,
                state=loc.state,
                country=loc.country,
                status=loc.status,
                latitude=loc.geo_point.lat if loc.geo_point else None,
                longitude=loc.geo_point.lon if loc.geo_point else None,
            )
            for loc in (contacts.locations if contacts else [])
        ),
        primary_outcomes=_unique(
            OutcomeRow(measure=o.measure, description=o.description, time_frame=o.time_frame)
            for o in (protocol.outcomes_module.primary_outcomes if protocol.outcomes_module else [])
        ),
        secondary_outcomes=_unique(
            OutcomeRow(measure=o.measure, description=o.description, time_frame=o.time_frame)
            for o in (
                protocol.outcomes_module.secondary_outcomes if protocol.outcomes_module else []
            )
        ),
    )
