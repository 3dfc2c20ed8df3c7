"""Content-addressable on-disk verdict cache with TTL.

One JSON file per key under the cache directory. There is no locking:
concurrent writers of the same key race and the last rename wins, which is
fine because they compute the same verdict for the same diff hash.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TTL_WORKING = 600  # 10 minutes; working tree and index change constantly
DEFAULT_TTL_RANGE = 3600  # 1 hour for fixed commits and ranges

_LONG_TTL_MODES = {"commit", "range", "all"}

# Temp files younger than this may belong to a writer that is still running.
TEMP_FILE_GRACE = 300


def default_ttl(mode: str) -> int:
    return DEFAULT_TTL_RANGE if mode in _LONG_TTL_MODES else DEFAULT_TTL_WORKING


def compute_cache_key(
    remote_url: str,
    mode: str,
    diff_hash: str,
    policy_id: str | None = None,
    ruleset_version: str | None = None,
) -> str:
    key_data = "|".join([remote_url, mode, diff_hash, policy_id or "", ruleset_version or ""])
    return hashlib.sha256(key_data.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class CacheEntry:
    """A cached analyzer verdict."""

    key: str
    response: dict[str, Any]
    diff_hash: str
    created_at: datetime
    expires_at: datetime
    ruleset_version: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now()) > self.expires_at

    def age_fraction(self, now: datetime | None = None) -> float:
        """How far through its TTL the entry is (0.0 fresh, 1.0 expiring)."""
        lifetime = (self.expires_at - self.created_at).total_seconds()
        if lifetime <= 0:
            return 1.0
        return ((now or _now()) - self.created_at).total_seconds() / lifetime

    def to_dict(self) -> dict[str, Any]:
        data = {
            "key": self.key,
            "response": self.response,
            "diffHash": self.diff_hash,
            "createdAt": _isoformat(self.created_at),
            "expiresAt": _isoformat(self.expires_at),
        }
        if self.ruleset_version:
            data["rulesetVersion"] = self.ruleset_version
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        if not isinstance(data.get("response"), dict):
            raise ValueError("cache entry has no response object")
        return cls(
            key=data["key"],
            response=data["response"],
            diff_hash=data["diffHash"],
            created_at=_parse_ts(data["createdAt"]),
            expires_at=_parse_ts(data["expiresAt"]),
            ruleset_version=data.get("rulesetVersion"),
        )


class CacheStore:
    """Verdict cache rooted at ``cache_dir``."""

    def __init__(self, cache_dir: str | Path):
        self.cache_dir = Path(cache_dir)

    def path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``.

        Expired and unparseable entries are deleted and reported as misses.
        """
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Cache read failed for %s: %s", key[:12], e)
            return None

        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug("Discarding corrupt cache entry %s: %s", key[:12], e)
            self._unlink(path)
            return None

        if entry.is_expired():
            logger.debug("Cache entry %s expired at %s", key[:12], entry.expires_at)
            self._unlink(path)
            return None

        return entry

    def put(
        self,
        key: str,
        response: dict[str, Any],
        diff_hash: str,
        ttl_seconds: int,
        ruleset_version: str | None = None,
    ) -> CacheEntry:
        """Write (or wholesale overwrite) the entry for ``key``."""
        now = _now()
        entry = CacheEntry(
            key=key,
            response=response,
            diff_hash=diff_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ruleset_version=ruleset_version,
        )
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never see a partial file.
        fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{key[:12]}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, indent=2)
            os.replace(tmp, self.path_for(key))
        except BaseException:
            self._unlink(Path(tmp))
            raise
        logger.debug("Cached %s for %ds", key[:12], ttl_seconds)
        return entry

    def discard(self, key: str) -> bool:
        """Delete the entry for ``key``. Returns True if a file was removed."""
        return self._unlink(self.path_for(key))

    def clear(self) -> int:
        """Delete every cache entry and leftover temp file. Returns the number removed."""
        removed = 0
        for path in self._entry_paths() + self._temp_paths():
            if self._unlink(path):
                removed += 1
        return removed

    def sweep_expired(self) -> int:
        """Delete expired and corrupt entries, plus temp files orphaned by
        interrupted writes. Returns the number removed.
        """
        removed = 0
        now = _now()
        cutoff = now.timestamp() - TEMP_FILE_GRACE
        for path in self._temp_paths():
            try:
                orphaned = path.stat().st_mtime < cutoff
            except OSError:
                continue
            if orphaned and self._unlink(path):
                removed += 1
        for path in self._entry_paths():
            try:
                entry = CacheEntry.from_dict(json.loads(path.read_text(encoding="utf-8")))
                stale = entry.is_expired(now)
            except FileNotFoundError:
                continue
            except (OSError, ValueError, KeyError, TypeError, AttributeError):
                stale = True
            if stale and self._unlink(path):
                removed += 1
        return removed

    def stats(self) -> dict[str, int]:
        entries = 0
        size_bytes = 0
        for path in self._entry_paths():
            try:
                size_bytes += path.stat().st_size
            except OSError:
                continue
            entries += 1
        return {"entries": entries, "size_bytes": size_bytes}

    def _entry_paths(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(self.cache_dir.glob("*.json"))

    def _temp_paths(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(self.cache_dir.glob(".*.tmp"))

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug("Could not remove %s: %s", path, e)
            return False
