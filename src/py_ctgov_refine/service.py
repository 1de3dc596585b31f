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
"""The operations offered to front ends: search, refine, details and export.

``TrialsService`` ties the response cache, the record store, the session
manager and the source client together. A search goes to the source only on
a cache miss; a refinement never goes to the source at all.

Not-found outcomes (an unknown session token, a study neither stored nor
known to the source) are returned as ``None``. A refinement that leaves no
studies is a normal result with a count of zero.
"""

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .cache import ResponseCache
from .client import ClinicalTrialsClient
from .config import Settings
from .errors import InvalidCriteriaError, StudyNotFoundError
from .exporter import Exporter
from .filters import filter_studies
from .formatting import format_study_list
from .models.filters import FilterCriteria
from .models.results import BackfillReport, RefineOutcome, SearchOutcome
from .models.search import SearchParams, SearchResponse
from .models.study import Study
from .sessions import SessionManager
from .store import BaseStore, create_store

logger = logging.getLogger(__name__)

SEARCH_CATEGORY = "search"
SEARCH_ALL_CATEGORY = "search_all"


def to_criteria(criteria: FilterCriteria | Mapping[str, Any]) -> FilterCriteria:
    """Validate criteria given as a mapping.

    Raises:
        InvalidCriteriaError: If a field is unknown or has an invalid value.

    """
    if isinstance(criteria, FilterCriteria):
        return criteria
    try:
        return FilterCriteria.model_validate(dict(criteria))
    except ValidationError as e:
        msg = f"Invalid filter criteria: {e}"
        raise InvalidCriteriaError(msg) from e


class TrialsService:
    """Facade over the cache, store, sessions and source client."""

    def __init__(
        self,
        store: BaseStore,
        cache: ResponseCache,
        sessions: SessionManager,
        client: ClinicalTrialsClient,
        exporter: Exporter,
    ) -> None:
        self.store = store
        self.cache = cache
        self.sessions = sessions
        self.client = client
        self.exporter = exporter

    def close(self) -> None:
        self.client.close()
        self.store.close()

    def __enter__(self) -> "TrialsService":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Search --------------------------------------------------------

    def _cached_response(self, category: str, key: dict[str, Any]) -> SearchResponse | None:
        cached = self.cache.get(category, key)
        if cached is None:
            return None
        try:
            return SearchResponse.model_validate(cached)
        except ValidationError as e:
            logger.warning("Ignoring cached %s response that failed validation: %s", category, e)
            return None

    def _fetch(self, params: SearchParams, fetch_all: bool) -> SearchResponse:
        if not fetch_all:
            return self.client.search(params)
        studies: list[Study] = []
        for page in self.client.search_all(params):
            studies.extend(page)
        logger.info("Fetched %d studies across all pages.", len(studies))
        return SearchResponse(studies=studies, total_count=len(studies))

    def search(self, params: SearchParams, fetch_all: bool = False) -> SearchOutcome:
        """Search the source, store the studies and open a session on them.

        Args:
            params: Search criteria.
            fetch_all: Follow pagination to the last page instead of
                returning only the first.

        Raises:
            SourceError: If the source fails and no cached response exists.

        """
        key = params.to_key_params()
        category = SEARCH_ALL_CATEGORY if fetch_all else SEARCH_CATEGORY

        response = self._cached_response(category, key)
        from_cache = response is not None
        if response is None:
            response = self._fetch(params, fetch_all)
            payload = response.to_payload()
            self.cache.set(category, key, payload)
            self.cache.append_audit(payload, key)

        self.store.upsert_many(response.studies)
        session_id = self.sessions.create(key, [study.nct_id for study in response.studies])
        return SearchOutcome(
            session_id=session_id,
            studies=response.studies,
            total_count=response.total_count,
            from_cache=from_cache,
        )

    # -- Sessions ------------------------------------------------------

    def refine(
        self,
        session_id: str,
        criteria: FilterCriteria | Mapping[str, Any],
    ) -> RefineOutcome | None:
        """Narrow a session to the studies that match ``criteria``.

        Returns None if the session is unknown.

        Raises:
            InvalidCriteriaError: If ``criteria`` is a mapping that fails
                validation.

        """
        criteria = to_criteria(criteria)
        studies = self.sessions.resolve(session_id)
        if studies is None:
            return None
        kept = filter_studies(studies, criteria)
        self.sessions.refine(session_id, [study.nct_id for study in kept])
        return RefineOutcome(studies=kept, previous_count=len(studies), new_count=len(kept))

    def get_session_studies(self, session_id: str) -> list[Study] | None:
        return self.sessions.resolve(session_id)

    def summarize(self, session_id: str, max_results: int = 10) -> str | None:
        """Return a text listing of a session's studies, or None if it is unknown."""
        studies = self.sessions.resolve(session_id)
        if studies is None:
            return None
        return format_study_list(studies, max_results)

    def export(
        self,
        session_id: str,
        fmt: str,
        destination: str | Path,
        extra_columns: Sequence[str] | None = None,
    ) -> Path | None:
        """Write a session's studies to a file; None if the session is unknown."""
        studies = self.sessions.resolve(session_id)
        if studies is None:
            return None
        return self.exporter.export(studies, fmt, destination, extra_columns)

    # -- Studies -------------------------------------------------------

    def get_details(self, nct_id: str) -> Study | None:
        """Return a study from the store, falling back to the source.

        A study fetched from the source is stored before it is returned.
        Returns None when neither has it.

        Raises:
            SourceError: If the source fails for any reason other than not
                having the study.

        """
        study = self.store.get(nct_id)
        if study is not None:
            return study
        try:
            study = self.client.get_study(nct_id)
        except StudyNotFoundError:
            logger.info("Study %s not found locally or at the source.", nct_id)
            return None
        self.store.upsert(study)
        return study

    def local_search(self, query: str, limit: int = 100) -> list[Study]:
        """Full-text search over stored studies, most relevant first.

        Raises:
            InvalidQueryError: If the query is blank or malformed.

        """
        ids = self.store.full_text_search(query, limit)
        found = self.store.get_many(ids)
        return [found[nct_id] for nct_id in ids if nct_id in found]

    # -- Maintenance ---------------------------------------------------

    def info(self) -> dict[str, Any]:
        """Source version and size alongside the local store and cache counts."""
        version = self.client.get_version()
        size = self.client.get_stats()
        return {
            "api_version": version.get("apiVersion"),
            "data_timestamp": version.get("dataTimestamp"),
            "source_studies": size.get("totalStudies"),
            "stored_studies": self.store.count(),
            **self.cache.stats(),
        }

    def backfill(self) -> BackfillReport:
        return self.store.backfill()

    def clear_cache(self) -> None:
        self.cache.clear_all()

    def prune_cache(self) -> int:
        return self.cache.clear_expired()


def create_service(settings: Settings) -> TrialsService:
    """Build the service and its collaborators from settings.

    The store schema is created or upgraded before the service is returned.
    """
    store = create_store(settings)
    report = store.prepare_schema()
    if report.skipped:
        logger.warning(
            "%d stored studies could not be re-projected: %s",
            len(report.skipped),
            ", ".join(report.skipped),
        )
    cache = ResponseCache(
        settings.cache_dir,
        settings.audit_dir,
        memory_ttl=settings.memory_cache_ttl,
        disk_ttl=settings.disk_cache_ttl,
    )
    return TrialsService(
        store=store,
        cache=cache,
        sessions=SessionManager(store),
        client=ClinicalTrialsClient(settings),
        exporter=Exporter(settings.export_dir),
    )
