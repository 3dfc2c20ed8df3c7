"""Local client configuration: credentials, org/machine ids, cache location.

Loaded once per process by the command layer and passed down explicitly.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.costgate.dev"
CONFIG_FILENAME = "config.json"


def default_home() -> Path:
    """Return the per-user costgate directory (COSTGATE_HOME or ~/.costgate)."""
    override = os.environ.get("COSTGATE_HOME", "")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".costgate"


@dataclass(frozen=True)
class Config:
    """Immutable snapshot of the local configuration."""

    api_base_url: str = DEFAULT_API_BASE_URL
    org_id: str | None = None
    user_id: str | None = None
    access_token: str | None = None
    token_expires_at: str | None = None
    machine_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cache_dir: str = ""
    policy_id: str | None = None
    ruleset_version: str | None = None
    ci_token: bool = False  # token came from COSTGATE_TOKEN, never refreshed

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.org_id and self.user_id)

    def with_token(self, access_token: str, expires_at: str | None) -> Config:
        return replace(self, access_token=access_token, token_expires_at=expires_at)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("ci_token")
        return {k: v for k, v in data.items() if v not in (None, "")}


_FILE_KEYS = {
    "api_base_url", "org_id", "user_id", "access_token", "token_expires_at",
    "machine_id", "cache_dir", "policy_id", "ruleset_version",
}


def load_config(home: Path | None = None) -> Config:
    """Read config.json and apply environment overrides.

    A missing or corrupt file yields defaults rather than an error.
    """
    home = home or default_home()
    values: dict = {}

    path = home / CONFIG_FILENAME
    if path.is_file():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                values = {k: v for k, v in raw.items() if k in _FILE_KEYS}
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug("Ignoring unreadable config %s: %s", path, e)

    env_token = os.environ.get("COSTGATE_TOKEN", "")
    if env_token:
        values["access_token"] = env_token
        values["ci_token"] = True
    for env_name, key in (
        ("COSTGATE_API_URL", "api_base_url"),
        ("COSTGATE_ORG_ID", "org_id"),
        ("COSTGATE_USER_ID", "user_id"),
        ("COSTGATE_CACHE_DIR", "cache_dir"),
    ):
        value = os.environ.get(env_name, "")
        if value:
            values[key] = value

    if not values.get("cache_dir"):
        values["cache_dir"] = str(home / "cache")

    return Config(**values)


def save_config(config: Config, home: Path | None = None) -> Path:
    """Persist config to disk with owner-only permissions."""
    home = home or default_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    path = home / CONFIG_FILENAME
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    os.chmod(path, 0o600)
    return path
