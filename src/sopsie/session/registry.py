"""Bidirectional source/ephemeral session registry."""

from __future__ import annotations

import logging
from typing import Iterator

from ..errors import SessionError
from ..events import EventBus, SessionClosed, SessionOpened
from ..interfaces import EditorHandle, EditorSurface
from .ephemeral_store import EphemeralFileStore
from .guard import GuardController
from .models import EphemeralFile, Presentation, Session

__all__ = ["SessionRegistry"]

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Owns the one-session-per-source and one-session-per-file mapping.

    Both index maps are only ever mutated together, in synchronous steps,
    so an event dispatched between two awaits never sees a half-installed
    session.
    """

    def __init__(
        self,
        store: EphemeralFileStore,
        editor: EditorSurface,
        guard: GuardController,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._editor = editor
        self._guard = guard
        self._event_bus = event_bus
        self._by_source: dict[str, Session] = {}
        self._by_ephemeral: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_session(self, source_path: str) -> Session | None:
        return self._by_source.get(source_path)

    def get_session_by_ephemeral(self, ephemeral_path: str) -> Session | None:
        return self._by_ephemeral.get(ephemeral_path)

    def has_ephemeral(self, path: str) -> bool:
        return path in self._by_ephemeral

    def sessions(self) -> list[Session]:
        return list(self._by_source.values())

    def latest(self) -> Session | None:
        """The most recently installed session, if any."""

        if not self._by_source:
            return None
        return next(reversed(self._by_source.values()))

    def __len__(self) -> int:
        return len(self._by_source)

    def __iter__(self) -> Iterator[Session]:
        return iter(self.sessions())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def track_opened(
        self,
        ephemeral: EphemeralFile,
        source_path: str,
        presentation: Presentation,
        *,
        handle: EditorHandle | None = None,
    ) -> Session:
        """Install a session for ``source_path``, replacing any previous one.

        The superseded session's tab is closed and its file deleted before
        the new session is installed.

        Raises:
            SessionError: If ``ephemeral`` already backs another session.
        """

        owner = self._by_ephemeral.get(ephemeral.path)
        if owner is not None:
            raise SessionError(
                f"{ephemeral.path} already backs the session for {owner.source_path}"
            )

        while (previous := self._by_source.get(source_path)) is not None:
            LOGGER.debug("Replacing session for %s (%s)", source_path, previous.ephemeral_path)
            self._detach(previous)
            await self.release(previous)

        if ephemeral.path in self._by_ephemeral:
            raise SessionError(f"{ephemeral.path} was claimed while replacing a session")

        session = Session(
            source_path=source_path,
            ephemeral=ephemeral,
            presentation=presentation,
            handle=handle,
        )
        self._by_source[source_path] = session
        self._by_ephemeral[ephemeral.path] = session
        LOGGER.debug("Tracking %s -> %s", ephemeral.path, source_path)
        self._publish(SessionOpened(source_path, ephemeral.path, ephemeral.kind.value))
        return session

    def attach_handle(self, session: Session, handle: EditorHandle) -> bool:
        """Record the editor handle of a tracked session.

        Returns ``False`` when the session is no longer tracked.
        """

        if self._by_ephemeral.get(session.ephemeral_path) is not session:
            return False
        session.handle = handle
        return True

    def untrack(self, key: str) -> Session | None:
        """Forget the session for an ephemeral path or a source path.

        Idempotent: the session is returned once, ``None`` thereafter.
        """

        session = self._by_ephemeral.get(key) or self._by_source.get(key)
        if session is None:
            return None
        self._detach(session)
        return session

    async def release(self, session: Session, *, close_editor: bool = True) -> None:
        """Close the session's tab (guarded) and delete its file.

        The session must already be untracked. Failures are logged.
        """

        if close_editor and session.handle is not None:
            self._guard.mark_recently_closed(session.source_path)
            try:
                async with self._guard.extension_triggered_open():
                    await self._editor.close_document(session.handle)
            except Exception as exc:
                LOGGER.warning("Failed to close editor for %s: %s", session.ephemeral_path, exc)
        await self._store.delete(session.ephemeral_path)

    async def close_all_tracked(self) -> list[Session]:
        """Close every tracked tab, then delete every backing file.

        Individual failures are logged and do not stop the remaining cleanups.
        """

        sessions = self.sessions()
        for session in sessions:
            self._detach(session)

        for session in sessions:
            if session.handle is None:
                continue
            self._guard.mark_recently_closed(session.source_path)
            try:
                async with self._guard.extension_triggered_open():
                    await self._editor.close_document(session.handle)
            except Exception as exc:
                LOGGER.warning("Failed to close editor for %s: %s", session.ephemeral_path, exc)

        for session in sessions:
            await self._store.delete(session.ephemeral_path)

        if sessions:
            LOGGER.debug("Closed %d tracked session(s)", len(sessions))
        return sessions

    def dispose_sync(self) -> int:
        """Forget every session and delete the files without touching the editor."""

        sessions = self.sessions()
        removed = 0
        for session in sessions:
            self._detach(session)
            if self._store.delete_sync(session.ephemeral_path):
                removed += 1
        return removed

    def _detach(self, session: Session) -> None:
        if self._by_source.get(session.source_path) is session:
            del self._by_source[session.source_path]
        if self._by_ephemeral.get(session.ephemeral_path) is session:
            del self._by_ephemeral[session.ephemeral_path]
        else:
            return
        LOGGER.debug("Untracked %s", session.ephemeral_path)
        self._publish(SessionClosed(session.source_path, session.ephemeral_path, session.kind.value))

    def _publish(self, event: SessionOpened | SessionClosed) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
