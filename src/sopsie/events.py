"""Event bus infrastructure connecting the host editor to the view manager.

The host adapter publishes editor events (documents opened, closed, focused,
about to be saved, saved) and the :class:`~sopsie.session.orchestrator.DecryptedViewManager`
publishes its own lifecycle events back so status displays can follow along
without holding a reference to the manager.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar
from weakref import WeakMethod

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Marker base; the bus routes on the concrete subclass."""


# Focus changes fire constantly while the user clicks around
_QUIET_EVENT_TYPES: set[type] = set()


# -- published by the host adapter --


@dataclass(slots=True)
class DocumentOpened(Event):
    """Emitted when the editor opens a document.

    Attributes:
        path: Absolute path of the opened document.
        text: The buffer contents at open time, when the host has them handy.
    """

    path: str
    text: str | None = None


@dataclass(slots=True)
class DocumentClosed(Event):
    """Emitted when the editor closes a document.

    Hosts may deliver this more than once for the same path.
    """

    path: str


@dataclass(slots=True)
class ActiveEditorChanged(Event):
    """Emitted when the focused editor changes.

    Attributes:
        path: Path of the newly focused document, or ``None`` when focus left
            all text editors.
        column: The view column hosting the focused editor, if known.
    """

    path: str | None
    column: int | None = None


_QUIET_EVENT_TYPES.add(ActiveEditorChanged)


@dataclass(slots=True)
class SaveOutcome:
    """Result contributed by a will-save participant.

    Attributes:
        proceed: ``False`` aborts the save entirely.
        text: Replacement buffer contents to persist instead of the current text.
    """

    proceed: bool = True
    text: str | None = None


@dataclass(slots=True)
class DocumentWillSave(Event):
    """Emitted right before the editor writes a document to disk.

    Handlers that need to change or veto the save register an awaitable via
    :meth:`wait_until`; the host awaits :meth:`settle` before writing.

    Attributes:
        path: Path of the document about to be saved.
        text: Buffer contents about to be written.
    """

    path: str
    text: str | None = None
    pending: list[Awaitable[SaveOutcome | None]] = field(default_factory=list)

    def wait_until(self, outcome: Awaitable[SaveOutcome | None]) -> None:
        """Delay the save until ``outcome`` resolves."""
        self.pending.append(outcome)

    async def settle(self) -> SaveOutcome:
        """Await every participant and fold their results into one outcome.

        The first participant that vetoes the save wins; otherwise the last
        replacement text wins.
        """
        result = SaveOutcome(proceed=True, text=None)
        pending, self.pending = self.pending, []
        for awaitable in pending:
            outcome = await awaitable
            if outcome is None:
                continue
            if not outcome.proceed:
                return SaveOutcome(proceed=False)
            if outcome.text is not None:
                result.text = outcome.text
        return result


@dataclass(slots=True)
class DocumentSaved(Event):
    """Emitted after a document was written to disk.

    Attributes:
        path: The filesystem path the document was saved to.
        text: The saved contents, when the host provides them.
    """

    path: str
    text: str | None = None


# -- published by the view manager --


@dataclass(slots=True)
class SessionOpened(Event):
    """Emitted when a decrypted view becomes tracked.

    Attributes:
        source_path: The encrypted source document.
        ephemeral_path: The temporary plaintext file backing the view.
        kind: ``"preview"`` or ``"editInPlace"``.
    """

    source_path: str
    ephemeral_path: str
    kind: str


@dataclass(slots=True)
class SessionClosed(Event):
    """Emitted when a decrypted view stops being tracked."""

    source_path: str
    ephemeral_path: str
    kind: str


@dataclass(slots=True)
class EncryptionStateChanged(Event):
    """Emitted when a source path enters or leaves the decrypted set.

    Attributes:
        path: The source document.
        decrypted: ``True`` when the document is now held as plaintext.
    """

    path: str
    decrypted: bool


@dataclass(slots=True)
class NoticePosted(Event):
    """Emitted when a notice should be shown to the user.

    Attributes:
        message: The notice text to display to the user.
        level: ``"info"``, ``"warning"`` or ``"error"``.
        title: Optional short heading for the notice.
        details: Extra diagnostic text (usually CLI stderr).
        actions: Labels of follow-up actions the host may offer.
        error_kind: The :class:`~sopsie.errors.SopsErrorKind` value for
            failures, so hosts can route actions like "Open Settings".
    """

    message: str
    level: str = "info"
    title: str | None = None
    details: str | None = None
    actions: tuple[str, ...] = ()
    error_kind: str | None = None


class EventBus(Generic[E]):
    """Synchronous publish/subscribe keyed on the exact event class.

    Bound methods are held through :class:`weakref.WeakMethod`, so a manager
    that is dropped without unsubscribing stops receiving events once it is
    collected. Functions, lambdas and builtin methods are held strongly.

    Handlers run in subscription order on the caller's thread. A handler that
    raises is logged and the remaining handlers still run. The bus is meant to
    be driven from the event loop thread only.
    """

    __slots__ = ("_subscriptions",)

    def __init__(self) -> None:
        self._subscriptions: dict[type[Event], list[_Subscription]] = {}

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for ``event_type``; repeated calls register it again."""

        self._subscriptions.setdefault(event_type, []).append(_Subscription.wrap(handler))
        LOGGER.debug("%s subscribed to %s", _describe(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Drop one registration of ``handler``; unknown handlers are ignored."""

        entries = self._subscriptions.get(event_type, [])
        for index, entry in enumerate(entries):
            if entry.refers_to(handler):
                del entries[index]
                LOGGER.debug("%s unsubscribed from %s", _describe(handler), event_type.__name__)
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        entries = self._subscriptions.get(event_type)
        if not entries:
            return
        if event_type not in _QUIET_EVENT_TYPES:
            LOGGER.debug("Dispatching %s to %d handler(s)", event_type.__name__, len(entries))

        # Snapshot: handlers may subscribe or unsubscribe during dispatch
        for entry in tuple(entries):
            handler = entry.target()
            if handler is None:
                if entry in entries:
                    entries.remove(entry)
                continue
            try:
                handler(event)
            except Exception:
                LOGGER.exception("%s failed while handling %s", _describe(handler), event_type.__name__)

    def clear(self) -> None:
        self._subscriptions.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Count live registrations for one event class, or for all of them."""

        if event_type is None:
            groups = list(self._subscriptions.values())
        else:
            groups = [self._subscriptions.get(event_type, [])]
        return sum(1 for entries in groups for entry in entries if entry.target() is not None)


@dataclass(slots=True, eq=False)
class _Subscription:
    handler: Any
    weak: bool = False

    @classmethod
    def wrap(cls, handler: Handler) -> "_Subscription":
        # builtin methods (``list.append``) have ``__self__`` but no ``__func__``
        if getattr(handler, "__func__", None) is not None and getattr(handler, "__self__", None) is not None:
            return cls(WeakMethod(handler), weak=True)
        return cls(handler)

    def target(self) -> Handler | None:
        return self.handler() if self.weak else self.handler

    def refers_to(self, handler: Handler) -> bool:
        current = self.target()
        return current is not None and current == handler


def _describe(handler: Any) -> str:
    owner = getattr(handler, "__self__", None)
    func = getattr(handler, "__func__", None)
    if owner is not None and func is not None:
        return f"{type(owner).__name__}.{func.__name__}"
    return getattr(handler, "__qualname__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "DocumentOpened",
    "DocumentClosed",
    "ActiveEditorChanged",
    "SaveOutcome",
    "DocumentWillSave",
    "DocumentSaved",
    "SessionOpened",
    "SessionClosed",
    "EncryptionStateChanged",
    "NoticePosted",
]
