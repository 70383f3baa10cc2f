"""Discovery and caching of ``.sops.yaml`` files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import ConfigParseError
from ..utils.file_io import read_text
from .parser import CreationRule, parse_config
from .rules import RulesMatcher, clear_regex_cache

__all__ = ["CONFIG_FILENAMES", "ConfigManager", "LoadedConfig"]

LOGGER = logging.getLogger(__name__)

CONFIG_FILENAMES: tuple[str, ...] = (".sops.yaml", ".sops.yml")


@dataclass(slots=True, frozen=True)
class LoadedConfig:
    config_path: Path
    mtime_ns: int
    matcher: RulesMatcher


class ConfigManager:
    """Finds the ``.sops.yaml`` governing a file, the way the SOPS CLI does.

    The search walks up from the file's directory and stops at ``root`` (when
    given) or at the filesystem root. Parsed configs are cached and re-read
    when their modification time changes. A config that fails to parse is
    logged and skipped, so the search continues with the parent directories.
    """

    def __init__(self, root: Path | str | None = None) -> None:
        self._root = Path(root).expanduser().resolve() if root is not None else None
        self._configs: dict[Path, LoadedConfig] = {}
        self._errors: dict[Path, ConfigParseError] = {}
        self._failed_mtimes: dict[Path, int] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def has_matching_rule(self, path: Path | str) -> bool:
        return self.find_matching_rule(path) is not None

    def find_matching_rule(self, path: Path | str) -> CreationRule | None:
        target = Path(path).expanduser().resolve()
        loaded = self.find_nearest_config(target)
        if loaded is None:
            return None
        return loaded.matcher.find_matching_rule(target)

    def find_nearest_config(self, path: Path | str) -> LoadedConfig | None:
        """Return the closest valid config above ``path``, or ``None``."""

        target = Path(path).expanduser().resolve()
        for directory in self._candidate_dirs(target.parent):
            for name in CONFIG_FILENAMES:
                loaded = self._load(directory / name)
                if loaded is not None:
                    return loaded
        return None

    def last_error(self, config_path: Path | str) -> ConfigParseError | None:
        """The parse failure recorded for ``config_path``, if any."""

        return self._errors.get(Path(config_path).expanduser().resolve())

    def parse_errors(self) -> list[ConfigParseError]:
        """Every parse failure recorded since the last reload."""

        return list(self._errors.values())

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    def reload(self, config_path: Path | str | None = None) -> None:
        """Drop cached configs (all of them, or the one at ``config_path``)."""

        clear_regex_cache()
        if config_path is None:
            self._configs.clear()
            self._errors.clear()
            self._failed_mtimes.clear()
            LOGGER.debug("Cleared all cached SOPS configs")
            return
        key = Path(config_path).expanduser().resolve()
        self._configs.pop(key, None)
        self._errors.pop(key, None)
        self._failed_mtimes.pop(key, None)
        LOGGER.debug("Cleared cached SOPS config %s", key)

    def _candidate_dirs(self, start: Path):
        current = start
        while True:
            yield current
            if self._root is not None and current == self._root:
                return
            parent = current.parent
            if parent == current:
                return
            current = parent

    def _load(self, config_path: Path) -> LoadedConfig | None:
        try:
            mtime_ns = config_path.stat().st_mtime_ns
        except OSError:
            self._configs.pop(config_path, None)
            return None

        cached = self._configs.get(config_path)
        if cached is not None and cached.mtime_ns == mtime_ns:
            return cached
        if self._failed_mtimes.get(config_path) == mtime_ns:
            return None

        try:
            text = read_text(config_path)
            config = parse_config(text, path=str(config_path))
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.error("Failed to read config %s: %s", config_path, exc)
            self._configs.pop(config_path, None)
            return None
        except ConfigParseError as exc:
            LOGGER.error("Failed to load config %s: %s", config_path, exc.message)
            self._configs.pop(config_path, None)
            self._errors[config_path] = exc
            self._failed_mtimes[config_path] = mtime_ns
            return None

        loaded = LoadedConfig(
            config_path=config_path,
            mtime_ns=mtime_ns,
            matcher=RulesMatcher(config, config_path.parent),
        )
        self._configs[config_path] = loaded
        self._errors.pop(config_path, None)
        self._failed_mtimes.pop(config_path, None)
        LOGGER.debug(
            "Loaded SOPS config %s (%d rule(s))", config_path, len(config.creation_rules)
        )
        return loaded
