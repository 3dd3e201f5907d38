"""Configuration, profile and history management for DBack.

All settings are stored as JSON files under ``~/.dback/``.
Secrets (SSH password, database password, relay key) are never written to
disk — they are delegated to ``keyring``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import keyring
import keyring.errors

from dback.models import SECRET_FIELDS, ConnectionProfile

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "DBack"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 10,
    "strict_host_key_checking": True,
    "transfer_chunk_size": 256 * 1024,
    "export_dir": str(Path.home()),
    "relay_timeout": 30,
    "history_limit": 500,
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings, connection profiles and activity history.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt file triggers a warning and
    a safe reset — it never crashes the application.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.dback/`` if necessary."""
        self._base = base_dir or Path.home() / ".dback"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"
        self._history_path = self._base / "history.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_list(self._profiles_path)
        self._history: list[dict[str, Any]] = self._load_list(self._history_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt config.json (%s) — resetting to defaults", exc
            )
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_list(self, path: Path) -> list[dict[str, Any]]:
        """Load a JSON array file, returning an empty list on corruption."""
        if not path.exists():
            return []
        try:
            raw = path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, list):
                raise ValueError(f"{path.name} root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt %s (%s) — resetting to empty list", path.name, exc
            )
            self._atomic_write(path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    @staticmethod
    def _secret_account(profile_name: str, field_name: str) -> str:
        """Keyring account key for one secret of one profile."""
        return f"{profile_name}:{field_name}"

    def _store_secret(self, profile_name: str, field_name: str, value: str) -> None:
        try:
            keyring.set_password(
                KEYRING_SERVICE, self._secret_account(profile_name, field_name), value
            )
        except keyring.errors.KeyringError as exc:
            logger.warning(
                "Could not store %s for %s in keyring (%s); it will not be saved",
                field_name, profile_name, exc,
            )
            return
        logger.debug("Stored %s in keyring for %s", field_name, profile_name)

    def _load_secret(self, profile_name: str, field_name: str) -> str:
        try:
            value = keyring.get_password(
                KEYRING_SERVICE, self._secret_account(profile_name, field_name)
            )
        except keyring.errors.KeyringError as exc:
            logger.warning("Could not read %s for %s from keyring: %s", field_name, profile_name, exc)
            return ""
        return value or ""

    def _delete_secret(self, profile_name: str, field_name: str) -> None:
        try:
            keyring.delete_password(
                KEYRING_SERVICE, self._secret_account(profile_name, field_name)
            )
        except keyring.errors.PasswordDeleteError:
            pass
        except keyring.errors.KeyringError as exc:
            logger.warning("Could not remove %s for %s from keyring: %s", field_name, profile_name, exc)

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        """Return a copy of all saved connection profiles (without secrets)."""
        return [dict(p) for p in self._profiles]

    def save_profile(self, profile: ConnectionProfile | dict[str, Any]) -> None:
        """Upsert a profile by its ``name`` field.

        If a profile with the same ``name`` already exists it is replaced;
        otherwise the new profile is appended.  Non-empty secret fields are
        moved to the keyring; only the remaining fields reach disk.
        """
        record = profile.to_dict() if isinstance(profile, ConnectionProfile) else dict(profile)
        name = record.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")

        for field_name in SECRET_FIELDS:
            secret = record.pop(field_name, None)
            if secret:
                self._store_secret(name, field_name, secret)

        for i, existing in enumerate(self._profiles):
            if existing.get("name") == name:
                self._profiles[i] = record
                break
        else:
            self._profiles.append(record)

        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)

    def delete_profile(self, name: str) -> bool:
        """Delete the profile identified by *name* and its stored secrets.

        Returns ``True`` if a profile was deleted, ``False`` if not found.
        """
        original_len = len(self._profiles)
        self._profiles = [p for p in self._profiles if p.get("name") != name]
        if len(self._profiles) < original_len:
            self._atomic_write(self._profiles_path, self._profiles)
            for field_name in SECRET_FIELDS:
                self._delete_secret(name, field_name)
            logger.info("Profile deleted: %s", name)
            return True
        logger.warning("delete_profile: profile not found: %s", name)
        return False

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return the stored profile dict for *name*, or ``None`` if not found."""
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None

    def load_profile(self, name: str) -> ConnectionProfile | None:
        """Return the :class:`ConnectionProfile` for *name* with its secrets.

        Raises:
            ValueError: If the stored record holds an unknown enum value.
        """
        record = self.get_profile(name)
        if record is None:
            return None
        for field_name in SECRET_FIELDS:
            record[field_name] = self._load_secret(name, field_name)
        return ConnectionProfile.from_dict(record)

    # ------------------------------------------------------------------
    # Activity history
    # ------------------------------------------------------------------

    def append_history(self, entry: Any) -> None:
        """Append a transfer event (or plain dict) to ``history.json``.

        The file keeps at most ``history_limit`` entries, oldest dropped
        first.
        """
        record = entry.to_dict() if hasattr(entry, "to_dict") else dict(entry)
        self._history.append(record)
        limit = int(self.get("history_limit", DEFAULT_CONFIG["history_limit"]))
        if limit > 0 and len(self._history) > limit:
            del self._history[: len(self._history) - limit]
        self._atomic_write(self._history_path, self._history)

    def get_history(self) -> list[dict[str, Any]]:
        """Return a copy of the recorded events, oldest first."""
        return [dict(e) for e in self._history]

    def clear_history(self) -> None:
        """Remove every recorded event."""
        self._history = []
        self._atomic_write(self._history_path, self._history)
        logger.info("History cleared")
