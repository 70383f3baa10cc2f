"""First-match evaluation of SOPS creation rules."""

from __future__ import annotations

import logging
import os
import re
from collections import OrderedDict
from pathlib import Path

from .parser import CreationRule, SopsConfig

__all__ = ["RulesMatcher", "clear_regex_cache"]

LOGGER = logging.getLogger(__name__)

_MAX_REGEX_CACHE_SIZE = 50
# ``None`` marks a pattern that failed to compile
_REGEX_CACHE: "OrderedDict[str, re.Pattern[str] | None]" = OrderedDict()


def clear_regex_cache() -> None:
    """Forget compiled patterns; called whenever a config is reloaded."""

    _REGEX_CACHE.clear()


def _cached_regex(pattern: str) -> re.Pattern[str] | None:
    if pattern in _REGEX_CACHE:
        _REGEX_CACHE.move_to_end(pattern)
        return _REGEX_CACHE[pattern]

    try:
        compiled: re.Pattern[str] | None = re.compile(pattern)
    except re.error:
        LOGGER.warning("Invalid regex pattern: %s", pattern)
        compiled = None

    if len(_REGEX_CACHE) >= _MAX_REGEX_CACHE_SIZE:
        _REGEX_CACHE.popitem(last=False)
    _REGEX_CACHE[pattern] = compiled
    return compiled


class RulesMatcher:
    """Matches files against the rules of one ``.sops.yaml``.

    ``path_regex`` is searched in the path relative to the config directory
    (always with forward slashes), ``filename_regex`` in the base name. A rule
    with neither matches every file, which is how SOPS itself behaves.
    """

    def __init__(self, config: SopsConfig, config_dir: Path | str) -> None:
        self._config = config
        self._config_dir = str(config_dir)

    @property
    def config(self) -> SopsConfig:
        return self._config

    def find_matching_rule(self, path: Path | str) -> CreationRule | None:
        relative_path, filename = self._normalized_paths(path)
        for rule in self._config.creation_rules:
            if _rule_matches(rule, relative_path, filename):
                return rule
        return None

    def has_matching_rule(self, path: Path | str) -> bool:
        return self.find_matching_rule(path) is not None

    def _normalized_paths(self, path: Path | str) -> tuple[str, str]:
        target = os.fspath(path)
        relative = os.path.relpath(target, self._config_dir)
        return relative.replace("\\", "/"), os.path.basename(target)


def _rule_matches(rule: CreationRule, relative_path: str, filename: str) -> bool:
    if rule.path_regex:
        regex = _cached_regex(rule.path_regex)
        return regex is not None and regex.search(relative_path) is not None
    if rule.filename_regex:
        regex = _cached_regex(rule.filename_regex)
        return regex is not None and regex.search(filename) is not None
    return True
