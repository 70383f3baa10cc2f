"""Settings dataclass and persistence helpers.

Settings live in ``~/.sopsie/settings.json``. Values passed on the command
line are layered on top of the file, and ``SOPSIE_*`` environment variables
are layered on top of both.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from .utils.file_io import write_text

__all__ = [
    "Settings",
    "SettingsStore",
    "OPEN_BEHAVIOR_CHOICES",
    "SAVE_BEHAVIOR_CHOICES",
    "VIEW_MODE_CHOICES",
    "active_env_overrides",
]

LOGGER = logging.getLogger(__name__)

_DEFAULT_PATH = Path.home() / ".sopsie" / "settings.json"
_SCHEMA_VERSION = 1
_ENV_PREFIX = "SOPSIE_"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _env_flag(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(raw: str) -> int:
    return int(raw, 10)


# variable -> (field, parser)
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "SOPSIE_SOPS_PATH": ("sops_path", str),
    "SOPSIE_OPEN_BEHAVIOR": ("open_behavior", str),
    "SOPSIE_SAVE_BEHAVIOR": ("save_behavior", str),
    "SOPSIE_VIEW_MODE": ("decrypted_view_mode", str),
    "SOPSIE_TEMP_DIR": ("temp_dir", str),
    "SOPSIE_DEBUG_LOGGING": ("debug_logging", _env_flag),
    "SOPSIE_OPEN_BESIDE": ("open_decrypted_beside", _env_flag),
    "SOPSIE_AUTO_CLOSE_TAB": ("auto_close_tab", _env_flag),
    "SOPSIE_AUTO_CLOSE_PAIRED_TAB": ("auto_close_paired_tab", _env_flag),
    "SOPSIE_DECRYPTION_TIMEOUT_MS": ("decryption_timeout_ms", _env_int),
    "SOPSIE_COOLDOWN_MS": ("recently_closed_cooldown_ms", _env_int),
    "SOPSIE_KILL_GRACE_SECONDS": ("kill_grace_seconds", float),
}


OPEN_BEHAVIOR_CHOICES: tuple[str, ...] = ("showEncrypted", "autoDecrypt", "showDecrypted")
SAVE_BEHAVIOR_CHOICES: tuple[str, ...] = ("manualEncrypt", "autoEncrypt", "prompt")
VIEW_MODE_CHOICES: tuple[str, ...] = ("preview", "editInPlace")
_CHOICE_FIELDS: Mapping[str, tuple[str, ...]] = {
    "open_behavior": OPEN_BEHAVIOR_CHOICES,
    "save_behavior": SAVE_BEHAVIOR_CHOICES,
    "decrypted_view_mode": VIEW_MODE_CHOICES,
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    sops_path: str = "sops"
    decryption_timeout_ms: int = 30_000
    kill_grace_seconds: float = 1.0
    open_behavior: str = "showEncrypted"
    save_behavior: str = "manualEncrypt"
    decrypted_view_mode: str = "preview"
    open_decrypted_beside: bool = True
    auto_close_tab: bool = True
    auto_close_paired_tab: bool = True
    show_status_bar: bool = True
    confirm_rotate: bool = True
    confirm_update_keys: bool = True
    debug_logging: bool = False
    recently_closed_cooldown_ms: int = 750
    temp_dir: str | None = None

    @property
    def decryption_timeout(self) -> float:
        """The SOPS call timeout in seconds."""
        return max(self.decryption_timeout_ms, 0) / 1000.0


class SettingsStore:
    """Reads and writes :class:`Settings` as versioned JSON."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return the persisted settings with CLI ``overrides`` and then the environment applied.

        A payload whose choice values had to be normalized, or whose schema
        version differs, is written back in the current shape.
        """

        payload = self._read_payload()
        settings = Settings()
        if payload:
            known, rewritten = _normalize_choices(_known_fields(payload))
            try:
                settings = Settings(**known)
            except TypeError as exc:
                LOGGER.warning("Ignoring malformed settings in %s: %s", self._path, exc)
                rewritten = True
            if rewritten or payload.get("version") != _SCHEMA_VERSION:
                self._migrate(settings)

        if overrides:
            settings = _layer(settings, overrides, source="command line")
        env = _environment_values()
        if env:
            settings = _layer(settings, env, source="environment")
        return settings

    def save(self, settings: Settings) -> Path:
        body = json.dumps({**asdict(settings), "version": _SCHEMA_VERSION}, indent=2, sort_keys=True)
        write_text(self._path, body)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _migrate(self, settings: Settings) -> None:
        try:
            self.save(settings)
        except OSError as exc:
            LOGGER.warning("Could not rewrite settings file %s: %s", self._path, exc)

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if isinstance(payload, dict):
            return payload
        LOGGER.warning("Settings file %s does not hold a JSON object; using defaults", self._path)
        return {}


def active_env_overrides() -> list[str]:
    """Names of the ``SOPSIE_*`` variables present in the environment."""

    return sorted(name for name in os.environ if name.startswith(_ENV_PREFIX))


def _environment_values() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for variable, (name, parse) in _ENV_OVERRIDES.items():
        raw = os.environ.get(variable)
        if raw is None:
            continue
        try:
            values[name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: not a valid %s", variable, raw, parse.__name__.lstrip("_"))
    return values


def _layer(settings: Settings, values: Mapping[str, Any], *, source: str) -> Settings:
    # ``None`` only means "unset" for the one optional field
    cleaned = {
        key: value
        for key, value in _known_fields(values).items()
        if value is not None or key == "temp_dir"
    }
    cleaned, _ = _normalize_choices(cleaned)
    if not cleaned:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, ", ".join(sorted(cleaned)))
    return replace(settings, **cleaned)


def _known_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    names = {item.name for item in fields(Settings)}
    return {key: value for key, value in values.items() if key in names}


def _normalize_choices(data: Mapping[str, Any]) -> tuple[Dict[str, Any], bool]:
    """Map enum-valued fields onto their canonical spelling, case-insensitively.

    Unknown values fall back to the field default. The flag reports whether
    anything changed.
    """

    result = dict(data)
    changed = False
    for name, choices in _CHOICE_FIELDS.items():
        if name not in result:
            continue
        raw = result[name]
        canonical = {choice.lower(): choice for choice in choices}.get(str(raw).strip().lower())
        if canonical is None:
            canonical = getattr(Settings(), name)
            LOGGER.warning("Unknown %s %r; using %s", name, raw, canonical)
        if canonical != raw:
            result[name] = canonical
            changed = True
    return result, changed
