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
"""Writes studies to CSV, JSON or JSONL files.

Missing values are written as the ``BLANK`` placeholder so that an empty
cell is never confused with a value that was exported as empty. Zero and
false are real values and are kept.
"""

import csv
import json
import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from .errors import UnsupportedFormatError
from .models.study import Study

logger = logging.getLogger(__name__)

BLANK = "BLANK"
EXPORT_FORMATS = ("csv", "json", "jsonl")

CSV_COLUMNS = [
    "NCT_ID",
    "Title",
    "Status",
    "Phase",
    "Enrollment",
    "StartDate",
    "CompletionDate",
    "Conditions",
    "Interventions",
    "PrimaryOutcomes",
    "SecondaryOutcomes",
    "Locations",
    "Sponsor",
    "Summary",
    "EligibilityCriteria",
]


def blank(value: Any) -> Any:
    """Replace a missing scalar with the placeholder."""
    if value is None or value == "":
        return BLANK
    return value


def blank_join(values: Sequence[Any] | None, separator: str = "; ") -> str:
    """Join a list for a CSV cell; an empty list becomes the placeholder."""
    joined = separator.join(str(v) for v in values or [] if v not in (None, ""))
    return joined or BLANK


def blank_deep(value: Any) -> Any:
    """Recursively replace missing values in a JSON-compatible structure."""
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, list):
        return [blank_deep(item) for item in value] if value else BLANK
    if isinstance(value, dict):
        return {key: blank_deep(item) for key, item in value.items()}
    return blank(value)


def _yes_no(flag: bool | None) -> str:
    if flag is None:
        return BLANK
    return "Yes" if flag else "No"


def _csv_row(study: Study) -> dict[str, Any]:
    protocol = study.protocol_section
    status = protocol.status_module
    design = protocol.design_module
    description = protocol.description_module
    conditions = protocol.conditions_module
    eligibility = protocol.eligibility_module
    arms = protocol.arms_interventions_module
    outcomes = protocol.outcomes_module
    contacts = protocol.contacts_locations_module
    sponsors = protocol.sponsor_collaborators_module

    enrollment = design.enrollment_info.count if design and design.enrollment_info else None
    return {
        "NCT_ID": study.nct_id,
        "Title": study.brief_title,
        "Status": status.overall_status,
        "Phase": blank_join(design.phases if design else None, ", "),
        "Enrollment": blank(enrollment),
        "StartDate": blank(status.start_date_struct and status.start_date_struct.date),
        "CompletionDate": blank(
            status.completion_date_struct and status.completion_date_struct.date
        ),
        "Conditions": blank_join(conditions.conditions if conditions else None),
        "Interventions": blank_join(
            [f"{i.type}: {i.name}" for i in arms.interventions] if arms else None
        ),
        "PrimaryOutcomes": blank_join(
            [o.measure for o in outcomes.primary_outcomes] if outcomes else None
        ),
        "SecondaryOutcomes": blank_join(
            [o.measure for o in outcomes.secondary_outcomes] if outcomes else None
        ),
        "Locations": blank_join(
            [
                ", ".join(p for p in (loc.facility, loc.city, loc.state, loc.country) if p)
                for loc in contacts.locations
            ]
            if contacts
            else None
        ),
        "Sponsor": blank(
            sponsors.lead_sponsor.name if sponsors and sponsors.lead_sponsor else None
        ),
        "Summary": blank(description.brief_summary if description else None),
        "EligibilityCriteria": blank(
            eligibility.eligibility_criteria if eligibility else None
        ),
    }


def _eligibility(study: Study) -> Any:
    return study.protocol_section.eligibility_module


def _design_info(study: Study) -> Any:
    design = study.protocol_section.design_module
    return design.design_info if design else None


def _oversight(study: Study) -> Any:
    return study.protocol_section.oversight_module


# Optional CSV columns, appended after CSV_COLUMNS when requested.
ADDITIONAL_COLUMNS: dict[str, Callable[[Study], Any]] = {
    "MinAge": lambda s: blank(_eligibility(s) and _eligibility(s).minimum_age),
    "MaxAge": lambda s: blank(_eligibility(s) and _eligibility(s).maximum_age),
    "Sex": lambda s: blank(_eligibility(s) and _eligibility(s).sex),
    "SponsorType": lambda s: blank(
        (m := s.protocol_section.sponsor_collaborators_module)
        and m.lead_sponsor
        and m.lead_sponsor.class_
    ),
    "InterventionType": lambda s: blank_join(
        [i.type for i in m.interventions]
        if (m := s.protocol_section.arms_interventions_module)
        else None
    ),
    "IsFDARegulatedDrug": lambda s: _yes_no(
        _oversight(s) and _oversight(s).is_fda_regulated_drug
    ),
    "IsFDARegulatedDevice": lambda s: _yes_no(
        _oversight(s) and _oversight(s).is_fda_regulated_device
    ),
    "HealthyVolunteers": lambda s: _yes_no(
        _eligibility(s) and _eligibility(s).healthy_volunteers
    ),
    "AgeGroups": lambda s: blank_join(_eligibility(s) and _eligibility(s).std_ages, ", "),
    "PrimaryPurpose": lambda s: blank(_design_info(s) and _design_info(s).primary_purpose),
    "AllocationMethod": lambda s: blank(_design_info(s) and _design_info(s).allocation),
    "InterventionModel": lambda s: blank(
        _design_info(s) and _design_info(s).intervention_model
    ),
    "StudyType": lambda s: blank(
        (m := s.protocol_section.design_module) and m.study_type
    ),
}


class Exporter:
    """Writes studies to files under a managed export directory."""

    def __init__(self, export_dir: str | Path) -> None:
        self.export_dir = Path(export_dir)

    def resolve_path(self, destination: str | Path, fmt: str) -> Path:
        """Place a bare file name under ``<export_dir>/<fmt>/``.

        A destination that names a directory, or is absolute, is used as
        given. Parent directories are created either way.
        """
        path = Path(destination)
        if not path.is_absolute() and path.parent == Path("."):
            path = self.export_dir / fmt / path.name
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def export(
        self,
        studies: Sequence[Study],
        fmt: str,
        destination: str | Path,
        extra_columns: Sequence[str] | None = None,
    ) -> Path:
        """Write ``studies`` in the given format and return the file path.

        Args:
            studies: Studies to export, in output order.
            fmt: One of "csv", "json" or "jsonl".
            destination: File name or path of the output file.
            extra_columns: Names from ADDITIONAL_COLUMNS to append to a
                CSV export. Ignored for the JSON formats.

        Raises:
            UnsupportedFormatError: If ``fmt`` or an extra column is unknown.

        """
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            msg = f"Unsupported export format {fmt!r}; expected one of {', '.join(EXPORT_FORMATS)}."
            raise UnsupportedFormatError(msg)
        unknown = [c for c in extra_columns or [] if c not in ADDITIONAL_COLUMNS]
        if unknown:
            msg = f"Unknown export columns: {', '.join(unknown)}"
            raise UnsupportedFormatError(msg)

        path = self.resolve_path(destination, fmt)
        if fmt == "csv":
            self._write_csv(studies, path, list(extra_columns or []))
        elif fmt == "json":
            with open(path, "w", encoding="utf-8") as f:
                json.dump([blank_deep(s.to_payload()) for s in studies], f, indent=2)
        else:
            with open(path, "w", encoding="utf-8") as f:
                for study in studies:
                    f.write(json.dumps(blank_deep(study.to_payload())) + "\n")

        logger.info("Exported %d studies to %s", len(studies), path)
        return path

    @staticmethod
    def _write_csv(studies: Sequence[Study], path: Path, extra_columns: list[str]) -> None:
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS + extra_columns)
            writer.writeheader()
            for study in studies:
                row = _csv_row(study)
                for column in extra_columns:
                    row[column] = ADDITIONAL_COLUMNS[column](study)
                writer.writerow(row)
