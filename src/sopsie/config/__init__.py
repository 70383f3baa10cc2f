"""Rule-file support: parsing ``.sops.yaml`` and matching paths against it."""

from .manager import CONFIG_FILENAMES, ConfigManager, LoadedConfig
from .parser import CreationRule, SopsConfig, parse_config
from .rules import RulesMatcher, clear_regex_cache

__all__ = [
    "CONFIG_FILENAMES",
    "ConfigManager",
    "LoadedConfig",
    "CreationRule",
    "SopsConfig",
    "parse_config",
    "RulesMatcher",
    "clear_regex_cache",
]
