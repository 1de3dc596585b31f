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
"""Exception types raised by the package."""


class CtgovError(Exception):
    """Base class for all errors raised by py-ctgov-refine."""


class SourceError(CtgovError):
    """The ClinicalTrials.gov API failed terminally.

    Raised after retries are exhausted, on a non-retryable HTTP status, or
    when a response does not match the expected schema.
    """


class StudyNotFoundError(SourceError):
    """The source has no study with the requested NCT ID."""

    def __init__(self, nct_id: str) -> None:
        super().__init__(f"Study {nct_id} not found")
        self.nct_id = nct_id


class InvalidQueryError(CtgovError, ValueError):
    """A full-text query was empty or could not be parsed."""


class InvalidCriteriaError(CtgovError, ValueError):
    """Filter criteria failed validation."""


class UnsupportedFormatError(CtgovError, ValueError):
    """An export format is not one of csv, json or jsonl."""
