"""The decrypted-view manager: editor events in, view transitions out."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Coroutine

from ..errors import EphemeralFileError, NoOriginatingSourceError, SopsError
from ..events import (
    ActiveEditorChanged,
    DocumentClosed,
    DocumentOpened,
    DocumentSaved,
    DocumentWillSave,
    EncryptionStateChanged,
    SaveOutcome,
)
from ..interfaces import OpenOptions, ViewColumn
from ..notifications import ErrorReporter
from ..utils.file_io import normalize_path, try_read_text, write_text
from .models import EncryptionState, EphemeralKind, FileStatus, Presentation, Session, ShowDecryptedOptions
from .policy import SAVE_PROMPT, AutoBehaviorPolicy, OpenAction, OpenBehavior, PromptChoice, SaveAction, ViewMode
from .registry import SessionRegistry
from .state_tracker import resolve_encryption_state

if TYPE_CHECKING:  # pragma: no cover - import cycle
    from ..context import WorkspaceContext

__all__ = ["DecryptedViewManager", "UNSAVED_CHANGES_PROMPT"]

LOGGER = logging.getLogger(__name__)

UNSAVED_CHANGES_PROMPT = "You have unsaved changes in the decrypted file. Save before switching?"
_SAVE = "Save"
_DISCARD = "Discard"
_CANCEL = "Cancel"


class DecryptedViewManager:
    """Keeps decrypted views in step with what the user is looking at.

    The manager subscribes to the editor events on ``context.event_bus`` once,
    at construction. Event handlers run synchronously: they filter out events
    caused by the manager's own editor calls, then hand the real work to a
    background task. :meth:`wait_idle` waits for those tasks to drain.

    Every transition re-checks its preconditions after each await. Opens for
    the same source carry a generation number; an open that was overtaken by
    a newer one, or by :meth:`dispose`, cleans up after itself and returns
    ``None`` instead of installing a stale session.
    """

    def __init__(self, context: WorkspaceContext) -> None:
        self._context = context
        self._event_bus = context.event_bus
        self._editor = context.editor
        self._crypto = context.crypto
        self._rules = context.rule_matcher
        self._classifier = context.classifier
        self._store = context.store
        self._guard = context.guard
        self._tracker = context.tracker
        self._registry = SessionRegistry(self._store, self._editor, self._guard, self._event_bus)
        self._policy = AutoBehaviorPolicy(context.settings_provider, self._rules, self._tracker)
        self._reporter = ErrorReporter(self._event_bus)
        self._generations: dict[str, int] = {}
        self._in_flight: dict[str, int] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._save_tasks: dict[str, asyncio.Task[Any]] = {}
        self._disposed = False
        self._subscriptions = (
            (DocumentOpened, self._on_document_opened),
            (ActiveEditorChanged, self._on_active_editor_changed),
            (DocumentClosed, self._on_document_closed),
            (DocumentWillSave, self._on_document_will_save),
            (DocumentSaved, self._on_document_saved),
        )
        for event_type, handler in self._subscriptions:
            self._event_bus.subscribe(event_type, handler)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def context(self) -> WorkspaceContext:
        return self._context

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def policy(self) -> AutoBehaviorPolicy:
        return self._policy

    @property
    def reporter(self) -> ErrorReporter:
        return self._reporter

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_managed_file(self, path: str) -> bool:
        """Whether ``path`` is an ephemeral file backing a tracked view."""

        return self._registry.has_ephemeral(normalize_path(path))

    def get_session(self, path: str) -> Session | None:
        """The session for a source path or an ephemeral path."""

        path = normalize_path(path)
        return self._registry.get_session(path) or self._registry.get_session_by_ephemeral(path)

    def encryption_state(self, path: str, content: str | None = None) -> EncryptionState:
        path = normalize_path(path)
        if content is None:
            content = self._current_text(path)
        return resolve_encryption_state(
            path,
            content,
            rule_matcher=self._rules,
            classifier=self._classifier,
            tracker=self._tracker,
        )

    def file_status(self, path: str, content: str | None = None) -> FileStatus:
        path = normalize_path(path)
        return FileStatus(
            path=path,
            has_matching_rule=self._rules.has_matching_rule(path),
            state=self.encryption_state(path, content),
            is_managed=self._registry.has_ephemeral(path),
            has_open_view=self._registry.get_session(path) is not None,
        )

    # ------------------------------------------------------------------
    # Decrypted-set
    # ------------------------------------------------------------------
    def mark_decrypted(self, path: str) -> None:
        path = normalize_path(path)
        if self._tracker.is_marked_decrypted(path):
            return
        self._tracker.mark_decrypted(path)
        self._event_bus.publish(EncryptionStateChanged(path, decrypted=True))

    def mark_encrypted(self, path: str) -> None:
        path = normalize_path(path)
        if not self._tracker.is_marked_decrypted(path):
            return
        self._tracker.mark_encrypted(path)
        self._event_bus.publish(EncryptionStateChanged(path, decrypted=False))

    # ------------------------------------------------------------------
    # Opening views
    # ------------------------------------------------------------------
    async def open_decrypted_view(
        self, source_path: str, options: ShowDecryptedOptions | None = None
    ) -> Session | None:
        """Open a view of ``source_path`` in the configured view mode."""

        if self._policy.view_mode is ViewMode.EDIT_IN_PLACE:
            return await self.open_edit_in_place(source_path, options)
        return await self.open_preview(source_path, options)

    async def open_preview(
        self, source_path: str, options: ShowDecryptedOptions | None = None
    ) -> Session | None:
        """Open a read-only decrypted copy of ``source_path``.

        Returns:
            The installed session, or ``None`` when decryption failed (the
            failure is reported) or the open was overtaken.
        """

        return await self._open_view(source_path, EphemeralKind.PREVIEW, options or ShowDecryptedOptions())

    async def open_edit_in_place(
        self, source_path: str, options: ShowDecryptedOptions | None = None
    ) -> Session | None:
        """Open an editable decrypted copy; saving it encrypts back to the source."""

        options = options or ShowDecryptedOptions()
        session = await self._open_view(source_path, EphemeralKind.EDIT_IN_PLACE, options)
        if session is not None and options.show_info_message:
            name = Path(session.source_path).name
            self._reporter.info(f"Editing decrypted copy. Save to encrypt back to {name}")
        return session

    async def _open_view(
        self, source_path: str, kind: EphemeralKind, options: ShowDecryptedOptions
    ) -> Session | None:
        source = normalize_path(source_path)
        if self._disposed:
            LOGGER.debug("Ignoring open of %s after dispose", source)
            return None

        generation = self._generations.get(source, 0) + 1
        self._generations[source] = generation
        self._in_flight[source] = generation
        try:
            return await self._open_view_steps(source, kind, options, generation)
        finally:
            if self._in_flight.get(source) == generation:
                del self._in_flight[source]

    async def _open_view_steps(
        self,
        source: str,
        kind: EphemeralKind,
        options: ShowDecryptedOptions,
        generation: int,
    ) -> Session | None:
        try:
            text = await self._crypto.decrypt(source)
        except SopsError as exc:
            self._reporter.report(exc, title=f"Failed to decrypt {Path(source).name}")
            return None
        if self._is_stale(source, generation):
            LOGGER.debug("Open of %s was overtaken during decrypt", source)
            return None

        column = self._target_column(options)
        try:
            ephemeral = await self._store.create(source, text, kind, view_column_hint=column)
        except EphemeralFileError as exc:
            self._reporter.report(exc)
            return None

        session: Session | None = None
        try:
            if self._is_stale(source, generation):
                LOGGER.debug("Open of %s was overtaken during temp file creation", source)
                self._store.delete_sync(ephemeral.path)
                return None

            presentation = Presentation(
                opened_in_column=column,
                original_column=options.original_column,
                return_focus_to_source=options.preserve_focus,
            )
            session = await self._registry.track_opened(ephemeral, source, presentation)
            if self._is_stale(source, generation):
                self._discard(session)
                return None

            open_options = OpenOptions(
                column=column,
                preserve_focus=options.preserve_focus,
                read_only=ephemeral.read_only,
            )
            try:
                handle = await self._guard.with_extension_triggered_open(
                    lambda: self._editor.open_document(ephemeral.path, open_options)
                )
            except Exception as exc:
                LOGGER.warning("Editor failed to open %s: %s", ephemeral.path, exc)
                self._discard(session)
                self._reporter.report(exc, title=f"Failed to open decrypted view of {Path(source).name}")
                return None

            if not self._registry.attach_handle(session, handle) or self._is_stale(source, generation):
                # Closed or replaced while the editor was opening it
                LOGGER.debug("Session for %s ended before its view opened", source)
                stale, session = session, None
                self._discard(stale)
                await self._close_handle(handle)
                return None
        except BaseException:
            if session is not None:
                self._discard(session)
            else:
                self._store.delete_sync(ephemeral.path)
            raise

        LOGGER.info("Opened %s view of %s", kind.value, source)
        return session

    def _target_column(self, options: ShowDecryptedOptions) -> int:
        if options.target_column is not None:
            return options.target_column
        beside = options.open_beside
        if beside is None:
            beside = self._context.settings.open_decrypted_beside
        return ViewColumn.BESIDE if beside else ViewColumn.ACTIVE

    def _is_stale(self, source: str, generation: int) -> bool:
        return self._disposed or self._generations.get(source) != generation

    def _discard(self, session: Session) -> None:
        if self._registry.get_session_by_ephemeral(session.ephemeral_path) is session:
            self._registry.untrack(session.ephemeral_path)
        self._store.delete_sync(session.ephemeral_path)

    async def _close_handle(self, handle) -> None:
        try:
            async with self._guard.extension_triggered_open():
                await self._editor.close_document(handle)
        except Exception as exc:
            LOGGER.warning("Failed to close %s: %s", handle.path, exc)

    # ------------------------------------------------------------------
    # Switching views
    # ------------------------------------------------------------------
    async def switch_to_edit_mode(self, preview_path: str) -> Session | None:
        """Replace the preview at ``preview_path`` with an edit-in-place view.

        The new view opens in the column the preview occupied.

        Raises:
            NoOriginatingSourceError: If ``preview_path`` backs no tracked view.
        """

        path = normalize_path(preview_path)
        session = self._registry.get_session_by_ephemeral(path)
        if session is None:
            raise NoOriginatingSourceError(path)
        if session.kind is EphemeralKind.EDIT_IN_PLACE:
            return session

        column = session.opened_in_column
        self._registry.untrack(path)
        self._guard.mark_recently_closed(session.source_path)
        await self._registry.release(session)
        return await self.open_edit_in_place(
            session.source_path,
            ShowDecryptedOptions(
                target_column=column,
                original_column=session.presentation.original_column,
            ),
        )

    async def switch_to_file(self, source_path: str) -> Session | None:
        """Move the decrypted view over to ``source_path``.

        A dirty edit-in-place view asks to be saved first; cancelling the
        prompt leaves everything as it was.
        """

        source = normalize_path(source_path)
        current = self._registry.latest()
        if current is None:
            return await self.open_decrypted_view(
                source, ShowDecryptedOptions(preserve_focus=True, show_info_message=False)
            )
        if current.source_path == source:
            return current

        if current.kind is EphemeralKind.EDIT_IN_PLACE and self._editor.is_dirty(current.ephemeral_path):
            choice = await self._editor.confirm(UNSAVED_CHANGES_PROMPT, (_SAVE, _DISCARD, _CANCEL))
            if choice not in (_SAVE, _DISCARD):
                LOGGER.debug("Switch to %s cancelled", source)
                return None
            if choice == _SAVE:
                await self._editor.save_document(current.ephemeral_path)
                pending_save = self._save_tasks.get(current.ephemeral_path)
                if pending_save is not None:
                    await asyncio.gather(pending_save, return_exceptions=True)

        column = current.opened_in_column
        original_column = current.presentation.original_column
        await self._registry.close_all_tracked()
        session = await self.open_decrypted_view(
            source,
            ShowDecryptedOptions(
                preserve_focus=True,
                show_info_message=False,
                target_column=column,
                original_column=original_column,
            ),
        )
        try:
            async with self._guard.extension_triggered_open():
                await self._editor.focus_document(source, column=original_column)
        except Exception as exc:
            LOGGER.debug("Could not refocus %s: %s", source, exc)
        return session

    async def close_all_views(self) -> int:
        """Close every decrypted view; returns how many were open."""

        return len(await self._registry.close_all_tracked())

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _on_document_opened(self, event: DocumentOpened) -> None:
        if self._disposed or self._guard.is_extension_triggered_open():
            return
        path = normalize_path(event.path)
        if self._registry.has_ephemeral(path):
            return
        self._spawn(self.handle_document_opened(path, event.text))

    def _on_active_editor_changed(self, event: ActiveEditorChanged) -> None:
        if self._disposed or event.path is None or self._guard.is_extension_triggered_open():
            return
        path = normalize_path(event.path)
        if self._registry.has_ephemeral(path) or self._guard.is_recently_closed(path):
            return
        self._spawn(self.handle_focus_change(path, column=event.column))

    def _on_document_closed(self, event: DocumentClosed) -> None:
        path = normalize_path(event.path)
        session = self._registry.untrack(path) if self._registry.has_ephemeral(path) else None
        if session is not None:
            LOGGER.debug("Decrypted view of %s closed", session.source_path)
            self._guard.mark_recently_closed(session.source_path)
            self._spawn(self._store.delete(session.ephemeral_path))
            return

        self.mark_encrypted(path)
        paired = self._registry.get_session(path)
        if paired is not None and self._context.settings.auto_close_paired_tab:
            LOGGER.debug("Source %s closed; closing its decrypted view", path)
            self._registry.untrack(path)
            self._spawn(self._registry.release(paired))

    def _on_document_will_save(self, event: DocumentWillSave) -> None:
        path = normalize_path(event.path)
        action = self._policy.decide_on_will_save(path)
        if action is SaveAction.PROCEED_AS_IS:
            return
        event.wait_until(self.handle_will_save(path, event.text, action=action))

    def _on_document_saved(self, event: DocumentSaved) -> None:
        path = normalize_path(event.path)
        session = self._registry.get_session_by_ephemeral(path)
        if session is None or session.kind is not EphemeralKind.EDIT_IN_PLACE:
            return
        task = self._spawn(self.handle_ephemeral_saved(session, event.text))
        if task is not None:
            self._save_tasks[path] = task
            task.add_done_callback(lambda done: self._forget_save(path, done))

    def _forget_save(self, path: str, task: asyncio.Task[Any]) -> None:
        if self._save_tasks.get(path) is task:
            del self._save_tasks[path]

    # ------------------------------------------------------------------
    # Event workflows
    # ------------------------------------------------------------------
    async def handle_document_opened(self, path: str, text: str | None = None) -> bool:
        """Decrypt a freshly opened source in its own buffer when configured to.

        Decrypted views for ``showDecrypted`` follow focus instead, see
        :meth:`handle_focus_change`.
        """

        path = normalize_path(path)
        if self._policy.open_behavior is not OpenBehavior.AUTO_DECRYPT:
            return False
        if not self._rules.has_matching_rule(path):
            return False
        content = text if text is not None else await self._read_current_text(path)
        state = self.encryption_state(path, content)
        action = self._policy.decide_on_open(path, state, has_matching_rule=True)
        if action is not OpenAction.AUTO_DECRYPT_IN_PLACE:
            return False

        try:
            plaintext = await self._crypto.decrypt(path)
        except SopsError as exc:
            self._reporter.warn(
                f"Auto-decrypt failed: {exc.message}. You can manually decrypt using the toolbar icon.",
                details=exc.details,
            )
            return False
        if self._disposed:
            return False
        await self._editor.replace_text(path, plaintext)
        self.mark_decrypted(path)
        return True

    async def handle_focus_change(self, path: str, *, column: int | None = None) -> Session | None:
        """Make the decrypted view follow the focused source document.

        Only active for the ``showDecrypted`` open behaviour. Focusing another
        governed, encrypted file moves the view over to it; focusing anything
        else closes the views when ``auto_close_tab`` is set.
        """

        path = normalize_path(path)
        if self._disposed or self._policy.open_behavior is not OpenBehavior.SHOW_DECRYPTED:
            return None
        if self._registry.has_ephemeral(path) or path in self._in_flight:
            return None
        current = self._registry.latest()
        if current is not None and current.source_path == path:
            return current

        has_rule = self._rules.has_matching_rule(path)
        content = await self._read_current_text(path) if has_rule else None
        state = self.encryption_state(path, content)
        action = self._policy.decide_on_open(path, state, has_matching_rule=has_rule)
        if self._disposed or path in self._in_flight:
            return None

        current = self._registry.latest()
        if action is OpenAction.NONE:
            if current is not None and self._context.settings.auto_close_tab:
                LOGGER.debug("Focus left decrypted sources; closing views")
                await self._registry.close_all_tracked()
            return None
        if current is None:
            return await self.open_decrypted_view(
                path,
                ShowDecryptedOptions(
                    preserve_focus=self._context.settings.open_decrypted_beside,
                    show_info_message=False,
                    original_column=column,
                ),
            )
        if current.source_path == path:
            return current
        if self._context.settings.open_decrypted_beside:
            return await self.switch_to_file(path)
        await self._registry.close_all_tracked()
        return await self.open_decrypted_view(
            path, ShowDecryptedOptions(show_info_message=False, original_column=column)
        )

    async def handle_will_save(
        self, path: str, text: str | None = None, *, action: SaveAction | None = None
    ) -> SaveOutcome:
        """Decide what a pending save of a decrypted source writes.

        Returns:
            ``SaveOutcome(proceed=False)`` when the user cancelled the prompt,
            a replacement ciphertext after a successful encryption, and a plain
            proceed otherwise. Encryption failures are reported and the save
            goes ahead with the plaintext.
        """

        path = normalize_path(path)
        if action is None:
            action = self._policy.decide_on_will_save(path)
        if action is SaveAction.PROMPT:
            choice = await self._editor.confirm(SAVE_PROMPT, PromptChoice.labels(), modal=True)
            action = self._policy.resolve_prompt(choice)
        if action is SaveAction.CANCEL:
            LOGGER.info("Save of %s cancelled", path)
            return SaveOutcome(proceed=False)
        if action is not SaveAction.AUTO_ENCRYPT:
            return SaveOutcome()

        content = text if text is not None else self._editor.get_text(path)
        if content is None:
            LOGGER.warning("No buffer text for %s; saving without encryption", path)
            return SaveOutcome()
        try:
            encrypted = await self._crypto.encrypt_content(content, path)
        except SopsError as exc:
            self._reporter.report(exc, title=f"Failed to encrypt {Path(path).name}")
            return SaveOutcome()
        self.mark_encrypted(path)
        return SaveOutcome(text=encrypted)

    async def handle_ephemeral_saved(self, session: Session, text: str | None = None) -> bool:
        """Encrypt a saved edit-in-place copy back into its source file."""

        content = text
        if content is None:
            content = self._editor.get_text(session.ephemeral_path)
        if content is None:
            content = await asyncio.to_thread(try_read_text, session.ephemeral_path)
        if content is None:
            self._reporter.warn(f"Could not read {Path(session.ephemeral_path).name}; nothing was encrypted")
            return False

        source = session.source_path
        try:
            encrypted = await self._crypto.encrypt_content(content, source)
        except SopsError as exc:
            self._reporter.report(exc, title=f"Failed to encrypt {Path(source).name}")
            return False
        try:
            await asyncio.to_thread(write_text, source, encrypted)
        except OSError as exc:
            LOGGER.warning("Failed to write %s: %s", source, exc)
            self._reporter.report(exc, title=f"Failed to save {Path(source).name}")
            return False
        self.mark_encrypted(source)
        self._reporter.info(f"Encrypted and saved to {Path(source).name}")
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def wait_idle(self) -> None:
        """Wait until every background task spawned by event handlers is done."""

        current = asyncio.current_task()
        while True:
            pending = [task for task in self._tasks if task is not current and not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispose(self) -> None:
        """Stop handling events, close every view and delete every temp file."""

        if self._disposed:
            return
        self._disposed = True
        self._unsubscribe()
        current = asyncio.current_task()
        # Saved edit copies must reach the source before the copies are deleted
        saves = [task for task in self._save_tasks.values() if task is not current]
        if saves:
            await asyncio.gather(*saves, return_exceptions=True)
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._registry.close_all_tracked()
        self._store.delete_all_sync()
        self._tracker.clear()
        LOGGER.debug("Decrypted view manager disposed")

    def dispose_sync(self) -> None:
        """Forget every session and delete the temp files without the editor.

        For process shutdown, when the event loop may already be gone.
        """

        self._disposed = True
        self._unsubscribe()
        for task in list(self._tasks):
            if task.done():
                continue
            try:
                task.cancel()
            except RuntimeError as exc:  # loop already closed
                LOGGER.debug("Could not cancel %s: %s", task.get_name(), exc)
        self._tasks.clear()
        self._registry.dispose_sync()
        self._store.delete_all_sync()
        self._tracker.clear()

    def _unsubscribe(self) -> None:
        for event_type, handler in self._subscriptions:
            self._event_bus.unsubscribe(event_type, handler)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return None

        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_finished)
        return task

    def _on_task_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Decrypted view task failed", exc_info=exc)

    def _current_text(self, path: str) -> str | None:
        text = self._editor.get_text(path)
        if text is None:
            text = try_read_text(path)
        return text

    async def _read_current_text(self, path: str) -> str | None:
        text = self._editor.get_text(path)
        if text is None:
            text = await asyncio.to_thread(try_read_text, path)
        return text
