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
"""Request and response models for the study search endpoint."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .study import Study


class SearchParams(BaseModel):
    """Search criteria sent to the source API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    query: str | None = None
    condition: str | None = None
    intervention: str | None = None
    phase: str | None = None
    status: str | None = None
    location: str | None = None
    sponsor_search: str | None = None
    page_size: int = Field(default=100, ge=1, le=1000)
    page_token: str | None = None
    fields: list[str] | None = None

    def to_key_params(self) -> dict[str, Any]:
        """Parameters as a plain dict, without unset criteria."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SearchResponse(BaseModel):
    """One page of search results, validated against the study schema."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    studies: list[Study] = Field(default_factory=list)
    next_page_token: str | None = None
    total_count: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "studies": [study.to_payload() for study in self.studies],
        }
        if self.next_page_token is not None:
            payload["nextPageToken"] = self.next_page_token
        if self.total_count is not None:
            payload["totalCount"] = self.total_count
        return payload
