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
"""Result types returned to front ends."""

from pydantic import BaseModel, Field

from .study import Study


class SearchOutcome(BaseModel):
    """The studies matched by a search and the session that now holds them."""

    session_id: str
    studies: list[Study]
    total_count: int | None = None
    from_cache: bool = False


class RefineOutcome(BaseModel):
    """The studies left in a session after a refinement."""

    studies: list[Study]
    previous_count: int
    new_count: int


class BackfillReport(BaseModel):
    """Summary of a backfill pass over stored studies."""

    updated: int = 0
    skipped: dict[str, str] = Field(
        default_factory=dict,
        description="NCT ID of each skipped study mapped to the reason.",
    )
