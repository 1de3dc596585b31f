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
"""Tracks search sessions: the ordered set of studies a search produced.

A session is created by a search and narrowed by each refinement. Only the
NCT IDs are held here; the studies themselves are resolved through the
record store, so a session always reflects the latest stored version.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from typing import Any

from .models.study import Study
from .store.base import BaseStore

logger = logging.getLogger(__name__)


def new_session_token() -> str:
    """Return a fresh, unguessable session token."""
    return f"session_{uuid.uuid4().hex}"


class SessionManager:
    """Creates, resolves and refines search sessions."""

    def __init__(
        self,
        store: BaseStore,
        token_factory: Callable[[], str] = new_session_token,
    ) -> None:
        self.store = store
        self.token_factory = token_factory

    @staticmethod
    def _unique(nct_ids: Iterable[str]) -> list[str]:
        # dict keeps first-seen order.
        return list(dict.fromkeys(nct_ids))

    def create(self, params: dict[str, Any], nct_ids: Iterable[str]) -> str:
        """Persist a new session and return its token.

        Args:
            params: The search parameters that produced the session.
            nct_ids: The matching NCT IDs, in result order. Duplicates
                are dropped, keeping the first occurrence.

        """
        token = self.token_factory()
        ids = self._unique(nct_ids)
        self.store.insert_session(token, params, ids)
        logger.info("Created session %s with %d studies.", token, len(ids))
        return token

    def exists(self, token: str) -> bool:
        return self.store.session_exists(token)

    def ids(self, token: str) -> list[str] | None:
        """The session's NCT IDs in stored order, or None if it is unknown."""
        return self.store.load_session_ids(token)

    def resolve(self, token: str) -> list[Study] | None:
        """Return the session's studies in stored order.

        IDs that no longer resolve to a stored study are skipped. Returns
        None when the token is unknown.
        """
        ids = self.store.load_session_ids(token)
        if ids is None:
            return None
        found = self.store.get_many(ids)
        missing = [nct_id for nct_id in ids if nct_id not in found]
        if missing:
            logger.warning(
                "Session %s references %d studies that are no longer stored: %s",
                token,
                len(missing),
                ", ".join(missing),
            )
        self.store.touch_session(token)
        return [found[nct_id] for nct_id in ids if nct_id in found]

    def refine(self, token: str, nct_ids: Iterable[str]) -> bool:
        """Replace the session's ID set; return False if the token is unknown."""
        ids = self._unique(nct_ids)
        replaced = self.store.replace_session_ids(token, ids)
        if replaced:
            logger.info("Session %s now holds %d studies.", token, len(ids))
        return replaced

    def params(self, token: str) -> dict[str, Any] | None:
        return self.store.load_session_params(token)
