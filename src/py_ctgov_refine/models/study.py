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
"""Pydantic models for a study record from the ClinicalTrials.gov API v2.

Only the sub-structures the application reads are typed. Every model allows
extra fields, so a payload round-trips through ``Study.to_payload()`` without
losing anything the source sends, including fields added after this module
was written.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PayloadModel(BaseModel):
    """Base for payload sub-structures keyed by camelCase names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class DateStruct(PayloadModel):
    date: str
    type: str | None = None


class OrgStudyIdInfo(PayloadModel):
    id: str


class IdentificationModule(PayloadModel):
    nct_id: str
    brief_title: str
    official_title: str | None = None
    acronym: str | None = None
    org_study_id_info: OrgStudyIdInfo | None = None


class StatusModule(PayloadModel):
    overall_status: str
    status_verified_date: str | None = None
    last_known_status: str | None = None
    start_date_struct: DateStruct | None = None
    primary_completion_date_struct: DateStruct | None = None
    completion_date_struct: DateStruct | None = None
    study_first_submit_date: str | None = None
    study_first_post_date_struct: DateStruct | None = None
    last_update_post_date_struct: DateStruct | None = None


class DescriptionModule(PayloadModel):
    brief_summary: str | None = None
    detailed_description: str | None = None


class ConditionsModule(PayloadModel):
    conditions: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class MaskingInfo(PayloadModel):
    masking: str | None = None


class DesignInfo(PayloadModel):
    allocation: str | None = None
    intervention_model: str | None = None
    primary_purpose: str | None = None
    masking_info: MaskingInfo | None = None


class EnrollmentInfo(PayloadModel):
    count: int | None = None
    type: str | None = None


class DesignModule(PayloadModel):
    study_type: str | None = None
    phases: list[str] = Field(default_factory=list)
    design_info: DesignInfo | None = None
    enrollment_info: EnrollmentInfo | None = None


class ArmGroup(PayloadModel):
    label: str
    type: str | None = None
    description: str | None = None
    intervention_names: list[str] = Field(default_factory=list)


class Intervention(PayloadModel):
    type: str
    name: str
    description: str | None = None
    arm_group_labels: list[str] = Field(default_factory=list)
    other_names: list[str] = Field(default_factory=list)


class ArmsInterventionsModule(PayloadModel):
    arm_groups: list[ArmGroup] = Field(default_factory=list)
    interventions: list[Intervention] = Field(default_factory=list)


class EligibilityModule(PayloadModel):
    eligibility_criteria: str | None = None
    healthy_volunteers: bool | None = None
    sex: str | None = None
    gender_based: bool | None = None
    minimum_age: str | None = None
    maximum_age: str | None = None
    std_ages: list[str] = Field(default_factory=list)


class GeoPoint(PayloadModel):
    lat: float
    lon: float


class Location(PayloadModel):
    facility: str | None = None
    status: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None
    geo_point: GeoPoint | None = None


class ContactsLocationsModule(PayloadModel):
    locations: list[Location] = Field(default_factory=list)


class Sponsor(PayloadModel):
    name: str
    # "class" is a keyword, so the attribute carries a trailing underscore.
    class_: str | None = Field(default=None, alias="class")


class SponsorCollaboratorsModule(PayloadModel):
    lead_sponsor: Sponsor | None = None
    collaborators: list[Sponsor] = Field(default_factory=list)


class OversightModule(PayloadModel):
    is_fda_regulated_drug: bool | None = None
    is_fda_regulated_device: bool | None = None
    oversight_has_dmc: bool | None = None


class Outcome(PayloadModel):
    measure: str
    description: str | None = None
    time_frame: str | None = None


class OutcomesModule(PayloadModel):
    primary_outcomes: list[Outcome] = Field(default_factory=list)
    secondary_outcomes: list[Outcome] = Field(default_factory=list)


class ProtocolSection(PayloadModel):
    identification_module: IdentificationModule
    status_module: StatusModule
    description_module: DescriptionModule | None = None
    conditions_module: ConditionsModule | None = None
    design_module: DesignModule | None = None
    arms_interventions_module: ArmsInterventionsModule | None = None
    eligibility_module: EligibilityModule | None = None
    contacts_locations_module: ContactsLocationsModule | None = None
    sponsor_collaborators_module: SponsorCollaboratorsModule | None = None
    oversight_module: OversightModule | None = None
    outcomes_module: OutcomesModule | None = None


class Study(PayloadModel):
    """A single study as returned by the source."""

    protocol_section: ProtocolSection
    has_results: bool = False

    @property
    def nct_id(self) -> str:
        return self.protocol_section.identification_module.nct_id

    @property
    def brief_title(self) -> str:
        return self.protocol_section.identification_module.brief_title

    def to_payload(self) -> dict[str, Any]:
        """Return the study in the source's own JSON shape.

        Fields that were not present in the original payload are omitted, so
        the result matches what was received.
        """
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)
