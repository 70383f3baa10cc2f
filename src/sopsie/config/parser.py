"""Parsing and validation of ``.sops.yaml`` files."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from ruamel.yaml import YAML
from ruamel.yaml.error import MarkedYAMLError, YAMLError

from ..errors import ConfigParseError

__all__ = ["CreationRule", "SopsConfig", "parse_config"]

_REGEX_FIELDS = ("path_regex", "filename_regex")
_STRING_FIELDS = (
    "encrypted_regex",
    "encrypted_suffix",
    "unencrypted_suffix",
    "age",
    "pgp",
    "kms",
    "gcp_kms",
    "azure_kv",
    "hc_vault_transit",
)


@dataclass(slots=True, frozen=True)
class CreationRule:
    """One entry of ``creation_rules``.

    Only the two matching fields drive behaviour here; the key fields are kept
    so status displays can show which recipients a rule encrypts for.
    """

    path_regex: str | None = None
    filename_regex: str | None = None
    encrypted_regex: str | None = None
    encrypted_suffix: str | None = None
    unencrypted_suffix: str | None = None
    age: str | None = None
    pgp: str | None = None
    kms: str | None = None
    gcp_kms: str | None = None
    azure_kv: str | None = None
    hc_vault_transit: str | None = None
    key_groups: tuple[Any, ...] = ()
    shamir_threshold: int | None = None

    @property
    def is_catch_all(self) -> bool:
        return not self.path_regex and not self.filename_regex


@dataclass(slots=True, frozen=True)
class SopsConfig:
    creation_rules: tuple[CreationRule, ...] = field(default_factory=tuple)


def parse_config(text: str, *, path: str | None = None) -> SopsConfig:
    """Parse ``.sops.yaml`` content.

    Raises:
        ConfigParseError: If the YAML is malformed, ``creation_rules`` is
            missing or not a list, or a rule's regex is not a compilable string.
    """

    parser = YAML(typ="safe")
    try:
        parsed = parser.load(text)
    except MarkedYAMLError as exc:
        detail = exc.problem or str(exc)
        raise ConfigParseError(message=f"Invalid YAML: {detail}", details=str(exc), path=path) from exc
    except YAMLError as exc:
        raise ConfigParseError(message=f"Invalid YAML: {exc}", path=path) from exc

    if not parsed:
        raise ConfigParseError(message="Empty or invalid YAML content", path=path)
    if not isinstance(parsed, Mapping):
        raise ConfigParseError(message="Top level of .sops.yaml must be a mapping", path=path)

    rules_payload = parsed.get("creation_rules")
    if rules_payload is None:
        raise ConfigParseError(message='Missing required "creation_rules" field', path=path)
    if not isinstance(rules_payload, list):
        raise ConfigParseError(message='"creation_rules" must be an array', path=path)

    rules = tuple(_validate_rule(rule, index, path) for index, rule in enumerate(rules_payload))
    return SopsConfig(creation_rules=rules)


def _validate_rule(rule: Any, index: int, path: str | None) -> CreationRule:
    if not isinstance(rule, Mapping):
        raise ConfigParseError(message=f"creation_rules[{index}] must be an object", path=path)

    for name in _REGEX_FIELDS:
        value = rule.get(name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ConfigParseError(
                message=f"creation_rules[{index}].{name} must be a string", path=path
            )
        if not value:
            continue
        try:
            re.compile(value)
        except re.error as exc:
            raise ConfigParseError(
                message=f"creation_rules[{index}].{name} is invalid: {exc}", path=path
            ) from exc

    values: dict[str, Any] = {name: _as_optional_str(rule.get(name)) for name in _REGEX_FIELDS}
    values.update({name: _as_optional_str(rule.get(name)) for name in _STRING_FIELDS})
    key_groups = rule.get("key_groups")
    values["key_groups"] = tuple(key_groups) if isinstance(key_groups, list) else ()
    threshold = rule.get("shamir_threshold")
    values["shamir_threshold"] = threshold if isinstance(threshold, int) else None
    return CreationRule(**values)


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        # Recipient lists are allowed in newer SOPS releases
        return ",".join(str(item) for item in value)
    return str(value)
