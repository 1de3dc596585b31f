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
"""Defines the Pydantic data models for the application."""

from .filters import FilterCriteria
from .results import BackfillReport, RefineOutcome, SearchOutcome
from .search import SearchParams, SearchResponse
from .study import Study

__all__ = [
    "BackfillReport",
    "FilterCriteria",
    "RefineOutcome",
    "SearchOutcome",
    "SearchParams",
    "SearchResponse",
    "Study",
]
