"""Error types raised by the SOPS runner, the rule parser and the view manager.

SOPS failures are classified into a small taxonomy so the notification layer
can offer a fitting follow-up action. The view manager treats them opaquely:
it never commits a state transition on failure and always reports them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

__all__ = [
    "SopsErrorKind",
    "SopsError",
    "ConfigParseError",
    "SessionError",
    "NoOriginatingSourceError",
    "EphemeralFileError",
    "suggested_action_for",
]


# -----------------------------------------------------------------------------
# SOPS failures
# -----------------------------------------------------------------------------


class SopsErrorKind(str, Enum):
    """Failure categories reported by the crypto executor."""

    CLI_NOT_FOUND = "CLI_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    KEY_ACCESS_DENIED = "KEY_ACCESS_DENIED"
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_PARSE_ERROR = "CONFIG_PARSE_ERROR"
    INVALID_FILE = "INVALID_FILE"
    ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    UNKNOWN = "UNKNOWN"


_SUGGESTED_ACTIONS: dict[SopsErrorKind, str] = {
    SopsErrorKind.CLI_NOT_FOUND: "Install SOPS or update the sops_path setting",
    SopsErrorKind.TIMEOUT: "Retry, or raise decryption_timeout_ms for slow key services",
    SopsErrorKind.KEY_ACCESS_DENIED: "Check your encryption key configuration (age, GPG, KMS, etc.)",
    SopsErrorKind.CONFIG_NOT_FOUND: "Create a .sops.yaml file in your workspace root",
    SopsErrorKind.CONFIG_PARSE_ERROR: "Fix the syntax of .sops.yaml",
    SopsErrorKind.INVALID_FILE: "Ensure the file is valid YAML/JSON",
}


def suggested_action_for(kind: SopsErrorKind) -> str:
    """Return the default recovery hint for ``kind`` (empty when there is none)."""

    return _SUGGESTED_ACTIONS.get(kind, "")


@dataclass
class SopsError(Exception):
    """A failed SOPS operation.

    Attributes:
        kind: Machine-readable failure category.
        message: Human-readable description.
        details: Raw diagnostic output (usually the CLI's stderr).
        suggested_action: Actionable guidance for recovery.
    """

    kind: SopsErrorKind
    message: str
    details: str | None = None
    suggested_action: str = ""

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)
        if not self.suggested_action:
            self.suggested_action = suggested_action_for(self.kind)

    @property
    def recoverable(self) -> bool:
        """Everything but a missing CLI is worth retrying."""
        return self.kind is not SopsErrorKind.CLI_NOT_FOUND

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


@dataclass
class ConfigParseError(SopsError):
    """Raised when ``.sops.yaml`` cannot be parsed or fails validation."""

    kind: SopsErrorKind = SopsErrorKind.CONFIG_PARSE_ERROR
    message: str = "Invalid .sops.yaml"
    path: str | None = None


# -----------------------------------------------------------------------------
# View manager failures
# -----------------------------------------------------------------------------


class SessionError(RuntimeError):
    """Base class for failures of the decrypted-view lifecycle."""


class NoOriginatingSourceError(SessionError):
    """Raised when an ephemeral path has no tracked source document."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No originating source is tracked for {path}")
        self.path = path


class EphemeralFileError(SessionError):
    """Raised when a temporary plaintext file could not be created."""

    def __init__(self, message: str, *, source_path: str | None = None) -> None:
        super().__init__(message)
        self.source_path = source_path
