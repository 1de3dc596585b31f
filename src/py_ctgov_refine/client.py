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
"""Client for the ClinicalTrials.gov API v2."""

import logging
import random
import time
from collections.abc import Callable, Iterator
from typing import Any

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import SourceError, StudyNotFoundError
from .models.search import SearchParams, SearchResponse
from .models.study import Study

USER_AGENT = "OHDSI/py-ctgov-refine (v0.1.0; mailto:rao@ohdsi.org)"

# Statuses worth another attempt; any other error status is final.
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

logger = logging.getLogger(__name__)


def build_query_term(params: SearchParams) -> str:
    """Combine the search criteria into one ``query.term`` expression."""
    parts = []
    if params.query:
        parts.append(params.query)
    if params.condition:
        parts.append(f"AREA[ConditionSearch]{params.condition}")
    if params.intervention:
        parts.append(f"AREA[InterventionSearch]{params.intervention}")
    if params.sponsor_search:
        parts.append(f"AREA[SponsorSearch]{params.sponsor_search}")
    if params.location:
        parts.append(f"AREA[LocationSearch]{params.location}")
    # The API has no phase area; a plain term matches the phase text.
    if params.phase:
        parts.append(params.phase)
    return " AND ".join(parts)


def build_request_params(params: SearchParams) -> dict[str, str]:
    """Translate SearchParams into the query string of ``GET /studies``."""
    request: dict[str, str] = {}
    term = build_query_term(params)
    if term:
        request["query.term"] = term
    if params.status:
        request["filter.overallStatus"] = params.status.upper()
    request["pageSize"] = str(params.page_size)
    if params.page_token:
        request["pageToken"] = params.page_token
    if params.fields:
        request["fields"] = ",".join(params.fields)
    request["countTotal"] = "true"
    return request


class ClinicalTrialsClient:
    """Fetches and validates studies from ClinicalTrials.gov."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initializes the client.

        Args:
            settings: Supplies the base URL, timeout and retry policy.
            client: An httpx.Client for making requests. One is created
                when not given.
            sleep: Called with the backoff delay between attempts.

        """
        self.base_url = settings.api_base_url.rstrip("/")
        self.max_retries = max(1, settings.max_retries)
        self.retry_delay = settings.retry_delay
        self.sleep = sleep
        self.client = (
            client
            if client
            else httpx.Client(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=settings.api_timeout,
            )
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "ClinicalTrialsClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        """GET a path, retrying transport failures, 429 and 5xx responses.

        Returns the first response that is not retryable, which may still be
        an error status for the caller to interpret.

        Raises:
            SourceError: If every attempt failed.

        """
        url = f"{self.base_url}{path}"
        for attempt in range(self.max_retries):
            try:
                response = self.client.get(url, params=params)
            except httpx.TransportError as e:
                failure: str = repr(e)
            else:
                if response.status_code not in RETRYABLE_STATUSES:
                    return response
                failure = f"HTTP {response.status_code}"

            logger.warning(
                "Request to %s failed on attempt %d/%d: %s",
                url,
                attempt + 1,
                self.max_retries,
                failure,
            )
            if attempt + 1 == self.max_retries:
                logger.error("All retries for %s failed.", url)
                msg = f"Request to {url} failed after {self.max_retries} attempts: {failure}"
                raise SourceError(msg)
            # Exponential backoff with jitter
            backoff_time = self.retry_delay * (2**attempt) + random.uniform(0, 1)
            self.sleep(backoff_time)
        raise AssertionError("unreachable")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.is_error:
            msg = f"Request to {response.request.url} failed: HTTP {response.status_code}"
            raise SourceError(msg)
        try:
            return response.json()
        except ValueError as e:
            msg = f"Response from {response.request.url} is not valid JSON: {e}"
            raise SourceError(msg) from e

    def search(self, params: SearchParams) -> SearchResponse:
        """Fetch one page of studies matching ``params``.

        Raises:
            SourceError: On a terminal request failure or an invalid payload.

        """
        data = self._json(self._get("/studies", build_request_params(params)))
        try:
            return SearchResponse.model_validate(data)
        except ValidationError as e:
            msg = f"Search response failed validation: {e}"
            raise SourceError(msg) from e

    def search_all(self, params: SearchParams) -> Iterator[list[Study]]:
        """Yield every page of results, following ``nextPageToken``.

        Pages are fetched lazily; each call starts again from the first page.
        """
        page = params.model_copy(update={"page_token": None})
        while True:
            response = self.search(page)
            yield response.studies
            if not response.next_page_token:
                return
            page = page.model_copy(update={"page_token": response.next_page_token})

    def get_study(self, nct_id: str, fields: list[str] | None = None) -> Study:
        """Fetch a single study by NCT ID.

        Raises:
            StudyNotFoundError: If the source has no such study.
            SourceError: On any other terminal failure.

        """
        request = {"fields": ",".join(fields)} if fields else None
        response = self._get(f"/studies/{nct_id}", request)
        if response.status_code == 404:
            raise StudyNotFoundError(nct_id)
        data = self._json(response)

        # Some deployments wrap the study in a "studies" array.
        if isinstance(data, dict) and "studies" in data:
            if not data["studies"]:
                raise StudyNotFoundError(nct_id)
            data = data["studies"][0]
        try:
            return Study.model_validate(data)
        except ValidationError as e:
            msg = f"Study {nct_id} failed validation: {e}"
            raise SourceError(msg) from e

    def get_version(self) -> dict[str, Any]:
        """Return the API version and data timestamp."""
        return self._json(self._get("/version"))

    def get_stats(self) -> dict[str, Any]:
        """Return the source's study count and last update date."""
        return self._json(self._get("/stats/size"))
