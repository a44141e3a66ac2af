"""Transient key/value cache with expiry.

Holds import previews between upload and confirm, and AI merchant
categorizations between imports. Each key is one JSON file::

    {"expires_at": "2024-01-05T10:00:00+00:00", "value": "..."}

Expired entries read as missing and are removed on read.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """String cache with per-entry time-to-live."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class FileCache:
    """Cache backed by one JSON file per key under *directory*.

    Args:
        directory: Cache directory; created on first write.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None

        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
            expires_at = datetime.fromisoformat(entry["expires_at"])
            value = entry["value"]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", path.name, exc)
            path.unlink(missing_ok=True)
            return None

        if expires_at <= datetime.now(timezone.utc):
            logger.debug("Cache entry %s expired", key)
            path.unlink(missing_ok=True)
            return None
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        payload = {"expires_at": expires_at.isoformat(timespec="seconds"), "value": value}
        self._path(key).write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        logger.debug("Cached %s for %ds", key, ttl_seconds)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _path(self, key: str) -> Path:
        # Percent-escaping keeps distinct keys on distinct file names.
        return self.directory / f"{quote(key, safe='')}.json"
