"""Turns failures and status messages into :class:`NoticePosted` events.

The manager never talks to a notification UI directly. Hosts subscribe to
:class:`~sopsie.events.NoticePosted` and render the message plus its
suggested follow-up actions however they see fit.
"""

from __future__ import annotations

import logging

from .errors import SopsError, SopsErrorKind
from .events import EventBus, NoticePosted

__all__ = ["ErrorReporter"]

LOGGER = logging.getLogger(__name__)

_ACTIONS: dict[SopsErrorKind, tuple[str, ...]] = {
    SopsErrorKind.CLI_NOT_FOUND: ("Install Guide", "Open Settings"),
    SopsErrorKind.KEY_ACCESS_DENIED: ("Show Details", "Key Configuration Guide"),
    SopsErrorKind.CONFIG_NOT_FOUND: ("Create Config", "Documentation"),
    SopsErrorKind.CONFIG_PARSE_ERROR: ("Open Config File", "Show Details"),
    SopsErrorKind.TIMEOUT: ("Retry", "Increase Timeout"),
}
_DEFAULT_ACTIONS: tuple[str, ...] = ("Show Details",)


class ErrorReporter:
    """Publishes one human-readable notice per failed or completed operation."""

    def __init__(self, event_bus: EventBus | None) -> None:
        self._event_bus = event_bus

    def report(self, error: SopsError | Exception, *, title: str | None = None) -> NoticePosted:
        """Publish an error notice for ``error`` and return it."""

        if isinstance(error, SopsError):
            notice = NoticePosted(
                message=_message_for(error),
                level="error",
                title=title,
                details=error.details,
                actions=_ACTIONS.get(error.kind, _DEFAULT_ACTIONS),
                error_kind=error.kind.value,
            )
            LOGGER.warning("%s (%s)", error.message, error.kind.value)
        else:
            notice = NoticePosted(message=str(error) or type(error).__name__, level="error", title=title)
            LOGGER.warning("%s", notice.message)
        self._post(notice)
        return notice

    def info(self, message: str) -> NoticePosted:
        notice = NoticePosted(message=message, level="info")
        LOGGER.info("%s", message)
        self._post(notice)
        return notice

    def warn(self, message: str, *, details: str | None = None) -> NoticePosted:
        notice = NoticePosted(message=message, level="warning", details=details)
        LOGGER.warning("%s", message)
        self._post(notice)
        return notice

    def _post(self, notice: NoticePosted) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(notice)


def _message_for(error: SopsError) -> str:
    kind = error.kind
    if kind is SopsErrorKind.CLI_NOT_FOUND:
        return "SOPS CLI not found. Please install SOPS or configure the path in settings."
    if kind is SopsErrorKind.CONFIG_NOT_FOUND:
        return "No .sops.yaml configuration found in workspace."
    if kind is SopsErrorKind.CONFIG_PARSE_ERROR:
        return f"Failed to parse .sops.yaml: {error.message}"
    if error.suggested_action:
        return f"{error.message}. {error.suggested_action}"
    return error.message
