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
"""Persistent record stores."""

from ..config import Settings
from .base import BaseStore
from .sqlite import SqliteStore


def create_store(settings: Settings) -> BaseStore:
    """Build the store selected by ``settings.store_backend``."""
    if settings.store_backend == "postgres":
        # psycopg loads libpq at import time.
        from .postgres import PostgresStore

        return PostgresStore(settings.db_connection_string)
    return SqliteStore(settings.sqlite_path)


__all__ = ["BaseStore", "SqliteStore", "create_store"]
