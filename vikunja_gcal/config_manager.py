from __future__ import annotations

import copy
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from vikunja_gcal.models import AppConfig


logger = logging.getLogger(__name__)

# (section, key) -> environment variable
ENV_OVERRIDES: dict[tuple[str, str], str] = {
    ("vikunja", "api_url"): "VIKUNJA_API_URL",
    ("vikunja", "api_token"): "VIKUNJA_API_TOKEN",
    ("vikunja", "frontend_url"): "VIKUNJA_FRONTEND_URL",
    ("vikunja", "timeout_seconds"): "VIKUNJA_TIMEOUT_SECONDS",
    ("google", "credentials_file"): "GOOGLE_APPLICATION_CREDENTIALS",
    ("google", "share_with_email"): "GOOGLE_CALENDAR_SHARE_WITH_EMAIL",
    ("google", "share_role"): "GOOGLE_CALENDAR_SHARE_ROLE",
    ("sync", "calendar_prefix"): "CALENDAR_PREFIX",
    ("sync", "pacing_ms"): "SYNC_PACING_MS",
    ("sync", "interval_seconds"): "SYNC_INTERVAL_SECONDS",
    ("feed", "host"): "FEED_HOST",
    ("feed", "port"): "FEED_PORT",
}

REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("vikunja", "api_url"),
    ("vikunja", "api_token"),
    ("vikunja", "frontend_url"),
    ("google", "credentials_file"),
    ("google", "share_with_email"),
)

SECRET_FIELDS: tuple[tuple[str, str], ...] = (("vikunja", "api_token"),)


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or malformed."""

    def __init__(self, missing: list[str], message: str | None = None) -> None:
        self.missing = missing
        super().__init__(message or f"Missing required configuration: {', '.join(missing)}")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for (section, key), env_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or not value.strip():
            continue
        overrides.setdefault(section, {})[key] = value.strip()
    return overrides


def missing_required(config: AppConfig) -> list[str]:
    data = config.to_dict()
    missing: list[str] = []
    for section, key in REQUIRED_FIELDS:
        if not str(data.get(section, {}).get(key, "") or "").strip():
            missing.append(ENV_OVERRIDES[(section, key)])
    return missing


class ConfigManager:
    """Loads the YAML config file and layers environment variables on top."""

    def __init__(
        self,
        config_path: str | os.PathLike[str] | None = None,
        environ: Mapping[str, str] | None = None,
        load_env_file: bool = True,
    ) -> None:
        self.config_path = Path(config_path) if config_path else None
        self._environ = environ
        self._load_env_file = load_env_file
        self._lock = threading.RLock()

    def _read_file(self) -> dict[str, Any]:
        if self.config_path is None or not self.config_path.exists():
            return {}
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config root must be a mapping: {self.config_path}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            if self._environ is None and self._load_env_file:
                load_dotenv()
            environ = os.environ if self._environ is None else self._environ
            merged = _deep_merge(self._read_file(), env_overrides(environ))
            return AppConfig.from_dict(merged)

    def load_validated(self) -> AppConfig:
        try:
            config = self.load()
        except (TypeError, ValueError) as exc:
            raise ConfigError([], f"Invalid configuration: {exc}") from exc
        missing = missing_required(config)
        if missing:
            raise ConfigError(missing)
        return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
