"""Profile registry: loads profiles.yaml into validated Profile records.

The engine only ever reads profiles; writing them is the tray UI's job.
When no profiles file exists, installed CLIs are auto-detected.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from cldbar.errors import ConfigInvalid

logger = logging.getLogger(__name__)

PROVIDER_TYPES = ("claude", "gemini", "zai")
SOURCE_TYPES = ("account", "api")


# ── Data model ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Profile:
    """One configured provider account."""

    id: str
    name: str
    provider_type: str  # claude | gemini | zai
    source_type: str = "account"  # account (local logs) | api (remote)
    config_dir: str = ""
    api_key: str | None = None
    enabled: bool = True

    @property
    def config_path(self) -> Path:
        return Path(self.config_dir).expanduser()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the API.  The key itself is never included."""
        return {
            "id": self.id,
            "name": self.name,
            "providerType": self.provider_type,
            "sourceType": self.source_type,
            "configDir": self.config_dir,
            "enabled": self.enabled,
            "hasApiKey": bool(self.api_key),
        }


def _field(raw: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in raw:
        return raw[snake]
    return raw.get(camel, default)


def parse_profile(raw: Any) -> Profile:
    """Validate one raw profile record.

    Raises ConfigInvalid when required fields are missing or unknown values
    are used.  Accepts both snake_case and the tray's camelCase keys.
    """
    if not isinstance(raw, dict):
        raise ConfigInvalid("profile entry is not a mapping")

    profile_id = str(raw.get("id") or "").strip()
    if not profile_id:
        raise ConfigInvalid("profile 'id' is required")

    provider_type = str(_field(raw, "provider_type", "providerType", "") or "").strip()
    if not provider_type:
        raise ConfigInvalid(f"profile {profile_id}: 'provider_type' is required")
    if provider_type not in PROVIDER_TYPES:
        raise ConfigInvalid(f"profile {profile_id}: unknown provider_type {provider_type!r}")

    source_type = str(_field(raw, "source_type", "sourceType", "account") or "account")
    if source_type not in SOURCE_TYPES:
        raise ConfigInvalid(f"profile {profile_id}: unknown source_type {source_type!r}")

    config_dir = str(_field(raw, "config_dir", "configDir", "") or "")
    api_key = _field(raw, "api_key", "apiKey")
    if source_type == "account" and not config_dir:
        raise ConfigInvalid(f"profile {profile_id}: 'config_dir' is required for account profiles")
    if source_type == "api" and not api_key:
        raise ConfigInvalid(f"profile {profile_id}: 'api_key' is required for api profiles")

    return Profile(
        id=profile_id,
        name=str(raw.get("name") or profile_id),
        provider_type=provider_type,
        source_type=source_type,
        config_dir=config_dir,
        api_key=str(api_key) if api_key else None,
        enabled=bool(raw.get("enabled", True)),
    )


# ── Auto-detection ───────────────────────────────────────────────────────────


def platform_config_dir() -> Path:
    """The per-user configuration directory of the host OS."""
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    return Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")


def default_profiles(home: Path | None = None, config_dir: Path | None = None) -> list[Profile]:
    """Profiles for every provider whose local data directory exists."""
    home = home or Path.home()
    config_dir = config_dir or platform_config_dir()
    candidates = [
        ("claude-default", "Claude", "claude", home / ".claude"),
        ("gemini-default", "Gemini", "gemini", home / ".gemini"),
        ("zai-default", "z.ai", "zai", config_dir / "zai"),
    ]
    profiles = []
    for profile_id, name, provider_type, path in candidates:
        if path.is_dir():
            profiles.append(
                Profile(
                    id=profile_id,
                    name=name,
                    provider_type=provider_type,
                    config_dir=str(path),
                )
            )
    return profiles


# ── Registry ─────────────────────────────────────────────────────────────────


class ProfileRegistry:
    """Loads and caches profiles from profiles.yaml."""

    def __init__(self, path: Path | str | None = None, autodetect: bool = True) -> None:
        self._path = Path(path) if path else Path("profiles.yaml")
        self._autodetect = autodetect
        self._profiles: list[Profile] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[Profile]:
        """Parse profiles.yaml and return valid profiles; bad entries are skipped."""
        if self._loaded and not force:
            return self._profiles

        self._profiles = []
        self._loaded = True
        if not self._path.exists():
            if self._autodetect:
                self._profiles = default_profiles()
                logger.info(
                    "No profiles file at %s, auto-detected %d profiles",
                    self._path, len(self._profiles),
                )
            else:
                logger.warning("Profiles file not found: %s", self._path)
            return self._profiles

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            return self._profiles

        entries = raw.get("profiles", []) if isinstance(raw, dict) else []
        seen: set[str] = set()
        for entry in entries or []:
            try:
                profile = parse_profile(entry)
            except ConfigInvalid as e:
                logger.warning("Skipping invalid profile entry: %s", e)
                continue
            if profile.id in seen:
                logger.warning("Skipping duplicate profile id %s", profile.id)
                continue
            seen.add(profile.id)
            self._profiles.append(profile)

        logger.info("Loaded %d profiles from %s", len(self._profiles), self._path)
        return self._profiles

    @property
    def profiles(self) -> list[Profile]:
        return self.load()

    def enabled(self) -> list[Profile]:
        return [p for p in self.profiles if p.enabled]

    def get(self, profile_id: str) -> Profile | None:
        return next((p for p in self.profiles if p.id == profile_id), None)

    def reload(self) -> list[Profile]:
        """Force reload from disk."""
        return self.load(force=True)

    def to_dict(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self.profiles]
