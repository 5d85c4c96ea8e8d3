"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

__all__ = ["Settings", "SettingsStore", "DEFAULT_SETTINGS_DIR"]

LOGGER = logging.getLogger(__name__)
DEFAULT_SETTINGS_DIR = Path.home() / ".convoflow"
_DEFAULT_SETTINGS_PATH = DEFAULT_SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _parse_optional_float(value: str) -> float | None:
    # "none" or "off" disables a timeout
    if value.strip().lower() in {"", "none", "off"}:
        return None
    return float(value)


_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "CONVOFLOW_BASE_URL": ("base_url", str),
    "CONVOFLOW_TOKEN_URL": ("token_url", str),
    "CONVOFLOW_MODEL": ("model", str),
    "CONVOFLOW_DEBUG_LOGGING": ("debug_logging", _parse_bool),
    "CONVOFLOW_REQUEST_TIMEOUT": ("request_timeout", float),
    "CONVOFLOW_TOOL_TIMEOUT": ("tool_timeout", _parse_optional_float),
    "CONVOFLOW_STREAM_MAX_ATTEMPTS": ("stream_max_attempts", int),
    "CONVOFLOW_MAX_TOOL_ITERATIONS": ("max_tool_iterations", int),
}


@dataclass(slots=True)
class Settings:
    """Engine configuration, persisted between sessions."""

    base_url: str = "https://chat.qwen.ai/api/v2"
    token_url: str = "https://sg-wum.alibaba.com/w/wu.json"
    model: str = "qwen3-coder-plus"
    request_timeout: float = 90.0
    connect_timeout: float = 30.0
    stream_max_attempts: int = 3
    stream_backoff_seconds: float = 0.5
    token_ttl_seconds: float = 1_800.0
    max_tool_iterations: int = 8
    tool_timeout: float | None = 120.0
    tool_concurrency: int | None = None
    client_version: str = "2.5.31"
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    @property
    def api_root(self) -> str:
        return self.base_url.rstrip("/")


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Read the settings file, then apply ``overrides`` and ``CONVOFLOW_*`` variables.

        The environment wins over ``overrides``, which win over the file. A
        missing or unreadable file yields the defaults.
        """

        settings = Settings()
        payload = self._read_payload()
        if payload:
            try:
                settings = Settings(**_filter_fields(payload))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)

        if overrides:
            given = {key: value for key, value in overrides.items() if value is not None}
            settings = _with_overrides(settings, given, source="caller")
        return _with_overrides(settings, _environment_overrides(), source="environment")

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not hold an object", self._path)
            return {}
        return payload


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _with_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    changes = _filter_fields(overrides)
    if not changes:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(changes))
    return replace(settings, **changes)


def _environment_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, parse) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            overrides[field_name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: not a valid %s", env_name, raw, field_name.replace("_", " "))
    return overrides
