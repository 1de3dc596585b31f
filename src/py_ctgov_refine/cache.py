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
"""Two-tier cache for API responses, plus a raw response audit log.

Entries live in a short-lived in-memory tier and a longer-lived tier of JSON
files on disk. Reads check memory first, then disk, and promote disk hits
into memory. Writes go to both tiers. Expired entries are dropped lazily when
read, or eagerly by ``clear_expired``.

Every response fetched from the source is also appended to a per-day JSONL
file in the audit directory. The audit log is never read back to serve
requests and is never rewritten or cleared by the cache.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MEMORY_CACHE_TTL = 60.0  # 1 minute
DISK_CACHE_TTL = 24 * 60 * 60.0  # 24 hours

_CATEGORY_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


class ResponseCache:
    """Memoizes source responses keyed by category and request parameters."""

    def __init__(
        self,
        cache_dir: str | Path,
        audit_dir: str | Path,
        memory_ttl: float = MEMORY_CACHE_TTL,
        disk_ttl: float = DISK_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache and create its directories.

        Args:
            cache_dir: Directory for the disk tier.
            audit_dir: Directory for the daily audit logs.
            memory_ttl: Seconds a memory entry stays valid.
            disk_ttl: Seconds a disk entry stays valid.
            clock: Returns the current time in epoch seconds.

        """
        self.cache_dir = Path(cache_dir)
        self.audit_dir = Path(audit_dir)
        self.memory_ttl = memory_ttl
        self.disk_ttl = disk_ttl
        self.clock = clock
        self._memory: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def make_key(category: str, params: Mapping[str, Any]) -> str:
        """Build a cache key that ignores parameter order.

        Keys are sorted at every nesting level and top-level ``None`` values
        are dropped, so semantically equal parameter sets share a key.
        """
        if not _CATEGORY_PATTERN.match(category):
            msg = f"Invalid cache category: {category!r}"
            raise ValueError(msg)
        cleaned = {key: value for key, value in params.items() if value is not None}
        canonical = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{category}-{digest}"

    def _disk_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    # -- Memory tier ---------------------------------------------------

    def _get_from_memory(self, key: str) -> Any | None:
        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                return None
            written_at, data = entry
            if self.clock() - written_at > self.memory_ttl:
                del self._memory[key]
                return None
            return data

    def _set_in_memory(self, key: str, data: Any) -> None:
        with self._lock:
            self._memory[key] = (self.clock(), data)

    # -- Disk tier -----------------------------------------------------

    def _read_disk_entry(self, path: Path) -> tuple[float, Any] | None:
        """Read a disk entry, deleting it if it cannot be parsed."""
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            entry = json.loads(content)
            return float(entry["timestamp"]), entry["data"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Removing corrupt cache file %s: %s", path.name, e)
            path.unlink(missing_ok=True)
            return None

    def _get_from_disk(self, key: str) -> Any | None:
        path = self._disk_path(key)
        entry = self._read_disk_entry(path)
        if entry is None:
            return None
        written_at, data = entry
        if self.clock() - written_at > self.disk_ttl:
            path.unlink(missing_ok=True)
            return None
        return data

    def _set_on_disk(self, key: str, data: Any) -> None:
        entry = {"timestamp": self.clock(), "data": data}
        # Write to a temporary file and rename it, so readers never see a
        # partial file and concurrent writers end with the last one's entry.
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry, f)
            os.replace(tmp_name, self._disk_path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # -- Public API ----------------------------------------------------

    def get(self, category: str, params: Mapping[str, Any]) -> Any | None:
        """Return a cached payload, or None on a miss."""
        key = self.make_key(category, params)

        data = self._get_from_memory(key)
        if data is not None:
            logger.debug("Memory cache hit for %s", key)
            return data

        data = self._get_from_disk(key)
        if data is not None:
            logger.debug("Disk cache hit for %s", key)
            self._set_in_memory(key, data)
            return data

        logger.debug("Cache miss for %s", key)
        return None

    def set(self, category: str, params: Mapping[str, Any], payload: Any) -> None:
        """Store a payload in both tiers."""
        key = self.make_key(category, params)
        self._set_in_memory(key, payload)
        self._set_on_disk(key, payload)

    def append_audit(self, payload: Any, params: Mapping[str, Any]) -> Path:
        """Append a raw response to today's audit log and return its path."""
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        path = self.audit_dir / f"raw-{now.date().isoformat()}.jsonl"
        line = json.dumps(
            {"timestamp": now.isoformat(), "params": dict(params), "response": payload},
            default=str,
        )
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        return path

    def clear_all(self) -> None:
        """Drop every entry from both tiers."""
        with self._lock:
            self._memory.clear()
        for path in self.cache_dir.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
        logger.info("Cleared all cache entries in %s", self.cache_dir)

    def clear_expired(self) -> int:
        """Evict stale entries from both tiers; return how many were removed.

        Corrupt disk files are removed as well and counted.
        """
        removed = 0
        now = self.clock()
        with self._lock:
            for key in [k for k, (ts, _) in self._memory.items() if now - ts > self.memory_ttl]:
                del self._memory[key]
                removed += 1

        for path in self.cache_dir.glob("*.json"):
            entry = self._read_disk_entry(path)
            if entry is None:
                removed += 1
                continue
            if now - entry[0] > self.disk_ttl:
                path.unlink(missing_ok=True)
                removed += 1
        logger.info("Removed %d expired cache entries.", removed)
        return removed

    def stats(self) -> dict[str, int]:
        with self._lock:
            memory_entries = len(self._memory)
        return {
            "memory_entries": memory_entries,
            "disk_entries": sum(1 for _ in self.cache_dir.glob("*.json")),
        }
