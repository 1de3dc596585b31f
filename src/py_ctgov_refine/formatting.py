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
"""Markdown renderings of studies for front ends."""

from collections.abc import Sequence

from .models.study import DateStruct, Location, Study

LOCATIONS_PER_COUNTRY = 5


def format_study_list(studies: Sequence[Study], max_results: int = 10) -> str:
    """Render a numbered list of at most ``max_results`` studies."""
    lines = [f"Found {len(studies)} studies", ""]

    for i, study in enumerate(studies[:max_results], start=1):
        protocol = study.protocol_section
        design = protocol.design_module

        lines.append(f"{i}. **{study.nct_id}** - {study.brief_title}")
        status = f"   Status: {protocol.status_module.overall_status}"
        if design and design.phases:
            status += f" | Phase: {', '.join(design.phases)}"
        if design and design.enrollment_info and design.enrollment_info.count:
            status += f" | Enrollment: {design.enrollment_info.count}"
        lines.extend([status, ""])

    if len(studies) > max_results:
        lines.append(f"... and {len(studies) - max_results} more studies")
    return "\n".join(lines) + "\n"


def _dated(label: str, struct: DateStruct | None) -> str | None:
    if struct is None or not struct.date:
        return None
    text = f"- **{label}:** {struct.date}"
    if struct.type:
        text += f" ({struct.type})"
    return text


def _location_lines(locations: list[Location]) -> list[str]:
    by_country: dict[str, list[Location]] = {}
    for loc in locations:
        by_country.setdefault(loc.country or "Unknown", []).append(loc)

    lines = ["", f"### Locations ({len(locations)} sites)", ""]
    for country, sites in by_country.items():
        lines.append(f"**{country}** ({len(sites)} sites)")
        for loc in sites[:LOCATIONS_PER_COUNTRY]:
            text = "- " + ", ".join(p for p in (loc.facility, loc.city, loc.state) if p)
            if loc.status:
                text += f" ({loc.status})"
            lines.append(text)
        if len(sites) > LOCATIONS_PER_COUNTRY:
            lines.append(f"  ... and {len(sites) - LOCATIONS_PER_COUNTRY} more")
        lines.append("")
    return lines


def format_study_summary(study: Study, include_eligibility: bool = True) -> str:
    """Render the detail view of a single study."""
    protocol = study.protocol_section
    ident = protocol.identification_module
    status = protocol.status_module
    design = protocol.design_module
    description = protocol.description_module
    eligibility = protocol.eligibility_module
    sponsors = protocol.sponsor_collaborators_module

    lines = [f"## {ident.nct_id}: {ident.brief_title}", ""]
    if ident.official_title and ident.official_title != ident.brief_title:
        lines.extend([f"**Official Title:** {ident.official_title}", ""])
    if ident.acronym:
        lines.extend([f"**Acronym:** {ident.acronym}", ""])

    lines.extend(["### Study Details", ""])
    lines.append(f"- **Status:** {status.overall_status}")
    lines.append(f"- **Study Type:** {(design and design.study_type) or 'N/A'}")
    if design and design.phases:
        lines.append(f"- **Phase:** {', '.join(design.phases)}")
    if design and design.enrollment_info and design.enrollment_info.count:
        enrollment = f"- **Enrollment:** {design.enrollment_info.count} participants"
        if design.enrollment_info.type:
            enrollment += f" ({design.enrollment_info.type})"
        lines.append(enrollment)
    for label, struct in (
        ("Start Date", status.start_date_struct),
        ("Primary Completion", status.primary_completion_date_struct),
    ):
        dated = _dated(label, struct)
        if dated:
            lines.append(dated)
    if sponsors and sponsors.lead_sponsor:
        sponsor = f"- **Sponsor:** {sponsors.lead_sponsor.name}"
        if sponsors.lead_sponsor.class_:
            sponsor += f" ({sponsors.lead_sponsor.class_})"
        lines.append(sponsor)

    conditions = protocol.conditions_module
    if conditions and conditions.conditions:
        lines.extend(["", "### Conditions", ""])
        lines.extend(f"- {c}" for c in conditions.conditions)

    arms = protocol.arms_interventions_module
    if arms and arms.interventions:
        lines.extend(["", "### Interventions", ""])
        for intervention in arms.interventions:
            lines.append(f"- **{intervention.type}:** {intervention.name}")
            if intervention.description:
                lines.append(f"  {intervention.description}")

    if description and description.brief_summary:
        lines.extend(["", "### Summary", "", description.brief_summary])
    if description and description.detailed_description:
        lines.extend(["", "### Detailed Description", "", description.detailed_description])

    if include_eligibility and eligibility:
        lines.extend(["", "### Eligibility Criteria", ""])
        if eligibility.eligibility_criteria:
            lines.extend([eligibility.eligibility_criteria, ""])
        lines.append("**Key Requirements:**")
        if eligibility.sex:
            lines.append(f"- Sex: {eligibility.sex}")
        if eligibility.minimum_age or eligibility.maximum_age:
            lines.append(
                f"- Age: {eligibility.minimum_age or 'No minimum'} "
                f"to {eligibility.maximum_age or 'No maximum'}"
            )
        if eligibility.healthy_volunteers is not None:
            answer = "Yes" if eligibility.healthy_volunteers else "No"
            lines.append(f"- Healthy Volunteers: {answer}")

    contacts = protocol.contacts_locations_module
    if contacts and contacts.locations:
        lines.extend(_location_lines(contacts.locations))

    return "\n".join(lines) + "\n"
