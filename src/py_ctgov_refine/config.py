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
"""Manages the application's configuration using Pydantic."""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Manages configuration for the application.

    Reads settings from environment variables with the prefix 'CTGOV_'.
    """

    model_config = SettingsConfigDict(env_prefix="CTGOV_")

    # Record store
    store_backend: Literal["sqlite", "postgres"] = "sqlite"
    sqlite_path: Path = Path("data/clinical-trials.db")

    # PostgreSQL connection settings, used when store_backend is "postgres"
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    db_password: str = "postgres"
    db_name: str = "ctgov"

    # Response cache
    cache_dir: Path = Path("cache")
    audit_dir: Path = Path("audit")
    memory_cache_ttl: float = 60.0
    disk_cache_ttl: float = 24 * 60 * 60.0

    # ClinicalTrials.gov API
    api_base_url: str = "https://clinicaltrials.gov/api/v2"
    api_timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    default_page_size: int = 100

    export_dir: Path = Path("exports")
    log_level: str = "INFO"

    @computed_field
    @property
    def db_connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return (
            f"host='{self.db_host}' port='{self.db_port}' "
            f"user='{self.db_user}' password='{self.db_password}' "
            f"dbname='{self.db_name}'"
        )


def load_config(config_file: str | Path | None) -> dict[str, Any]:
    """Load configuration overrides from a YAML file.

    A missing file is not an error; it yields no overrides.
    """
    if not config_file:
        return {}
    try:
        with open(config_file) as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file not found: %s", config_file)
        return {}


def get_settings(config_file: str | Path | None = None) -> Settings:
    """Build settings from the environment, overlaid with a YAML file."""
    return Settings(**load_config(config_file))
