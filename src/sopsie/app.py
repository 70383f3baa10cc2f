"""Command line entry point: inspect files, check the SOPS CLI, dump settings."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, get_args, get_type_hints

from . import __version__
from .config import ConfigManager
from .errors import SopsError
from .session.state_tracker import FileStateTracker, resolve_encryption_state
from .settings import Settings, SettingsStore, active_env_overrides
from .sops import SopsDetector, SopsRunner
from .utils import logging as logging_utils
from .utils.file_io import normalize_path, try_read_text

_LOGGER = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_NULL_VALUES = {"", "none", "null"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file logging, echoing to stderr in debug mode."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``sopsie`` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = args.debug or _parse_bool(os.environ.get("SOPSIE_DEBUG", "0"), strict=False)
    configure_logging(debug)

    try:
        cli_overrides = _parse_set_options(args.overrides)
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    raw_path = args.settings_path or os.environ.get("SOPSIE_SETTINGS_PATH")
    store = SettingsStore(Path(raw_path).expanduser() if raw_path else None)
    settings = load_settings(store=store, overrides=cli_overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.dump_settings:
        _dump_settings(settings, store, cli_overrides)
        return 0
    if args.command == "status":
        return _run_status(args.paths, root=args.root)
    if args.command == "check":
        return asyncio.run(_run_check(settings))
    if args.command == "decrypt":
        return asyncio.run(_run_decrypt(settings, args.path))

    parser.print_help(sys.stderr)
    return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sopsie",
        add_help=True,
        description="Inspect SOPS-encrypted files and the sopsie configuration.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--settings",
        "--settings-path",
        dest="settings_path",
        metavar="PATH",
        help="Override the default ~/.sopsie/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on stderr.")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    status = subparsers.add_parser("status", help="Show rule match and encryption state per file.")
    status.add_argument("paths", nargs="+", metavar="PATH")
    status.add_argument(
        "--root",
        metavar="DIR",
        help="Stop looking for .sops.yaml above this directory.",
    )
    subparsers.add_parser("check", help="Report whether the SOPS CLI is available.")
    decrypt = subparsers.add_parser("decrypt", help="Print the decrypted contents of a file.")
    decrypt.add_argument("path", metavar="PATH")
    return parser


def _run_status(paths: Sequence[str], *, root: str | None = None) -> int:
    config = ConfigManager(root)
    detector = SopsDetector()
    tracker = FileStateTracker()
    missing = False
    for raw_path in paths:
        path = normalize_path(raw_path)
        if not Path(path).exists():
            print(f"{raw_path}: no such file", file=sys.stderr)
            missing = True
            continue
        state = resolve_encryption_state(
            path,
            try_read_text(path),
            rule_matcher=config,
            classifier=detector,
            tracker=tracker,
        )
        rule = "matched" if config.has_matching_rule(path) else "none"
        print(f"{raw_path}: rule={rule} state={state.value}")
    for error in config.parse_errors():
        print(f"warning: {error.path}: {error.message}", file=sys.stderr)
    return 1 if missing else 0


async def _run_check(settings: Settings) -> int:
    version = await SopsRunner(lambda: settings).get_version()
    if version is None:
        print(f'SOPS CLI not found at "{settings.sops_path}"', file=sys.stderr)
        return 1
    print(version)
    return 0


async def _run_decrypt(settings: Settings, path: str) -> int:
    try:
        plaintext = await SopsRunner(lambda: settings).decrypt(normalize_path(path))
    except SopsError as exc:
        print(f"Decryption failed: {exc.message}", file=sys.stderr)
        if exc.suggested_action:
            print(exc.suggested_action, file=sys.stderr)
        return 1
    sys.stdout.write(plaintext)
    return 0


def _parse_set_options(entries: Sequence[str]) -> Dict[str, Any]:
    """Turn ``KEY=VALUE`` strings into typed values keyed by settings field."""

    hints = get_type_hints(Settings)
    parsed: Dict[str, Any] = {}
    for entry in entries:
        key, sep, raw_value = entry.partition("=")
        key = key.strip()
        if not sep:
            raise ValueError(f"'{entry}' is not of the form KEY=VALUE")
        if not key:
            raise ValueError(f"'{entry}' has no setting name")
        if key not in hints:
            raise ValueError(f"unknown setting '{key}'")
        parsed[key] = _coerce_value(hints[key], raw_value)
    return parsed


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    """Convert ``raw_value`` to the scalar type named by a field annotation."""

    members = [arg for arg in get_args(annotation) if arg is not type(None)]
    nullable = len(members) < len(get_args(annotation))
    target = members[0] if members else annotation
    value = raw_value.strip()
    if nullable and value.lower() in _NULL_VALUES:
        return None
    if target is bool:
        return _parse_bool(value)
    if target is int:
        return int(value, 10)
    if target is float:
        return float(value)
    return value


def _parse_bool(value: str, *, strict: bool = True) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES or not strict:
        return False
    raise ValueError(f"'{value}' is not a boolean")


def _dump_settings(settings: Settings, store: SettingsStore, cli_overrides: Mapping[str, Any]) -> None:
    document = {
        "settings": asdict(settings),
        "meta": {
            "path": str(store.path),
            "cli_overrides": sorted(cli_overrides),
            "environment_variables": active_env_overrides(),
        },
    }
    print(json.dumps(document, indent=2))
