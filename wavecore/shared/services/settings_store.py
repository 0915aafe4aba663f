"""Settings documents: permission rules and hook configuration.

Settings live at two levels:
- User:    ~/.wave/settings.json
- Project: <workdir>/.wave/settings.json, overlaid by
           <workdir>/.wave/settings.local.json

Permission rules granted through "don't ask again" are appended to the
project's ``settings.local.json`` under ``permissions.allow``. Each write
re-reads and rewrites the whole document; concurrent writers resolve as
last-writer-wins.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from wavecore.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

WAVE_DIRNAME = ".wave"
SETTINGS_FILENAME = "settings.json"
LOCAL_SETTINGS_FILENAME = "settings.local.json"


def load_settings_file(path: Path) -> dict[str, Any]:
    """Load one settings document; missing or unreadable files give {}."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to load settings %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings %s: top level is not an object", path)
        return {}
    return data


def _string_list(settings: dict[str, Any], section: str, key: str, path: Path) -> list[str]:
    block = settings.get(section)
    if not isinstance(block, dict):
        return []
    values = block.get(key)
    if values is None:
        return []
    if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
        logger.warning("Ignoring %s.%s in %s: expected a list of strings", section, key, path)
        return []
    return list(values)


class SettingsStore:
    """Load and update the user and project settings documents."""

    def __init__(self, workdir: Path | str, home_dir: Path | str) -> None:
        self._user_path = Path(home_dir) / WAVE_DIRNAME / SETTINGS_FILENAME
        project_dir = Path(workdir) / WAVE_DIRNAME
        self._project_path = project_dir / SETTINGS_FILENAME
        self._local_path = project_dir / LOCAL_SETTINGS_FILENAME

    @property
    def user_path(self) -> Path:
        return self._user_path

    @property
    def project_path(self) -> Path:
        return self._project_path

    @property
    def local_path(self) -> Path:
        return self._local_path

    def load_user(self) -> dict[str, Any]:
        return load_settings_file(self._user_path)

    def load_project(self) -> dict[str, Any]:
        """Project settings with settings.local.json keys taking precedence."""
        merged = load_settings_file(self._project_path)
        local = load_settings_file(self._local_path)
        for key, value in local.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return merged

    def _merged_rules(self, key: str) -> list[str]:
        rules: list[str] = []
        for path in (self._user_path, self._project_path, self._local_path):
            for rule in _string_list(load_settings_file(path), "permissions", key, path):
                if rule not in rules:
                    rules.append(rule)
        return rules

    def load_allowed_rules(self) -> list[str]:
        return self._merged_rules("allow")

    def load_denied_rules(self) -> list[str]:
        return self._merged_rules("deny")

    def load_default_mode(self) -> str | None:
        for settings in (self.load_project(), self.load_user()):
            permissions = settings.get("permissions")
            if isinstance(permissions, dict) and isinstance(permissions.get("defaultMode"), str):
                return permissions["defaultMode"]
        return None

    def add_permission_rule(self, rule: str) -> bool:
        """Append ``rule`` to the project's local allow list.

        Returns False when the rule was already present.
        """
        settings = load_settings_file(self._local_path)
        permissions = settings.get("permissions")
        if not isinstance(permissions, dict):
            permissions = {}
            settings["permissions"] = permissions
        allow = permissions.get("allow")
        if not isinstance(allow, list):
            allow = []
            permissions["allow"] = allow
        if rule in allow:
            return False
        allow.append(rule)
        atomic_write_json(self._local_path, settings)
        logger.info("Permission rule saved: %s -> %s", rule, self._local_path)
        return True
