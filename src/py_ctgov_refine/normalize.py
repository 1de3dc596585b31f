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
"""Value normalization shared by ingestion and filtering."""

import re

_SEPARATORS = re.compile(r"[\s_\-,/]+")

_AGE_PATTERN = re.compile(
    r"^\s*(\d+(?:\.\d+)?)\s*(year|month|week|day|hour|minute)s?\s*$",
    re.IGNORECASE,
)

_DAYS_PER_YEAR = 365.25

_YEARS_PER_UNIT = {
    "year": 1.0,
    "month": 1.0 / 12,
    "week": 7 / _DAYS_PER_YEAR,
    "day": 1 / _DAYS_PER_YEAR,
    "hour": 1 / (_DAYS_PER_YEAR * 24),
    "minute": 1 / (_DAYS_PER_YEAR * 24 * 60),
}

_NO_AGE = {"", "N/A", "NA", "NONE"}


def canonicalize(value: str | None) -> str | None:
    """Return the canonical form of an enumerated value.

    Case is folded to upper and any run of spaces, underscores, hyphens,
    commas or slashes becomes a single underscore, so "Parallel Assignment"
    and "PARALLEL_ASSIGNMENT" compare equal.
    """
    if value is None:
        return None
    canonical = _SEPARATORS.sub("_", value.strip().upper()).strip("_")
    return canonical or None


def parse_age_years(value: str | None) -> float | None:
    """Convert an age such as "18 Years" or "6 Months" to years.

    Returns None for a missing age ("N/A" or empty).

    Raises:
        ValueError: If the text is not a number followed by a time unit.
    """
    if value is None or value.strip().upper() in _NO_AGE:
        return None
    match = _AGE_PATTERN.match(value)
    if not match:
        msg = f"Unrecognized age: {value!r}"
        raise ValueError(msg)
    amount, unit = match.groups()
    return float(amount) * _YEARS_PER_UNIT[unit.lower()]
