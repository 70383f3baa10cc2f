"""Fakes shared by the test suite: an in-memory editor, stub SOPS crypto, a manual clock."""

from __future__ import annotations

import asyncio
import stat
from pathlib import Path
from typing import Callable, Sequence

from sopsie.errors import SopsError
from sopsie.events import (
    ActiveEditorChanged,
    DocumentClosed,
    DocumentOpened,
    DocumentSaved,
    DocumentWillSave,
    EventBus,
)
from sopsie.interfaces import EditorHandle, OpenOptions, ViewColumn

ENCRYPTED_PREFIX = "ENC["


def encrypted_text(plaintext: str) -> str:
    """Ciphertext as produced by :class:`FakeCryptoExecutor`."""
    return f"{ENCRYPTED_PREFIX}{plaintext}]\nsops:\n    version: 3.8.1\n"


class StubClassifier:
    """Treats anything produced by :func:`encrypted_text` as encrypted."""

    def is_encrypted(self, content: str) -> bool:
        return content.startswith(ENCRYPTED_PREFIX)


class StubRuleMatcher:
    """Governs every path whose file name contains ``secrets`` by default."""

    def __init__(self, predicate: Callable[[str], bool] | None = None) -> None:
        self.predicate = predicate or (lambda path: "secrets" in Path(path).name)
        self.calls: list[str] = []

    def has_matching_rule(self, path: str) -> bool:
        self.calls.append(path)
        return self.predicate(path)


class FakeCryptoExecutor:
    """In-memory crypto collaborator.

    ``failures`` maps an operation name (``"decrypt"``, ``"encrypt_content"``,
    ``"update_keys"``, ``"rotate"``) onto the error it should raise.
    ``decrypt_gates`` holds an :class:`asyncio.Event` per path that a decrypt
    waits on before returning, to freeze an open half way through.
    ``encrypt_gate`` does the same for every ``encrypt_content`` call.
    """

    def __init__(self, plaintexts: dict[str, str] | None = None) -> None:
        self.plaintexts = dict(plaintexts or {})
        self.failures: dict[str, SopsError] = {}
        self.decrypt_gates: dict[str, asyncio.Event] = {}
        self.encrypt_gate: asyncio.Event | None = None
        self.decrypt_calls: list[str] = []
        self.encrypt_calls: list[tuple[str, str]] = []
        self.update_calls: list[str] = []
        self.rotate_calls: list[str] = []

    async def decrypt(self, path: str) -> str:
        self.decrypt_calls.append(path)
        gate = self.decrypt_gates.get(path)
        if gate is not None:
            await gate.wait()
        self._maybe_fail("decrypt")
        return self.plaintexts.get(path, f"plain: {Path(path).name}\n")

    async def encrypt_content(self, content: str, path: str) -> str:
        self.encrypt_calls.append((content, path))
        if self.encrypt_gate is not None:
            await self.encrypt_gate.wait()
        self._maybe_fail("encrypt_content")
        return encrypted_text(content)

    async def update_keys(self, path: str) -> None:
        self.update_calls.append(path)
        self._maybe_fail("update_keys")

    async def rotate(self, path: str) -> None:
        self.rotate_calls.append(path)
        self._maybe_fail("rotate")

    def _maybe_fail(self, operation: str) -> None:
        error = self.failures.get(operation)
        if error is not None:
            raise error


class FakeEditorSurface:
    """An editor that keeps buffers in memory and publishes real events.

    Events are published synchronously from inside the surface calls, like a
    host adapter forwarding editor notifications would. The ``user_*``
    helpers simulate what the user does by hand.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self.buffers: dict[str, str] = {}
        self.columns: dict[str, int] = {}
        self.dirty: set[str] = set()
        self.active: str | None = None
        self.confirm_answers: list[str | None] = []
        self.prompts: list[tuple[str, tuple[str, ...], bool]] = []
        self.open_calls: list[tuple[str, OpenOptions]] = []
        self.close_calls: list[EditorHandle] = []
        self.focus_calls: list[tuple[str, int | None]] = []
        self.saved: list[str] = []
        self.open_error: Exception | None = None
        self.open_gate: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # EditorSurface
    # ------------------------------------------------------------------
    async def open_document(self, path: str, options: OpenOptions) -> EditorHandle:
        self.open_calls.append((path, options))
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        text = Path(path).read_text(encoding="utf-8")
        column = self._resolve_column(options.column)
        self.buffers[path] = text
        self.columns[path] = column
        self.bus.publish(DocumentOpened(path, text))
        if not options.preserve_focus:
            self.active = path
            self.bus.publish(ActiveEditorChanged(path, column))
        return EditorHandle(path, column)

    async def close_document(self, handle: EditorHandle) -> None:
        self.close_calls.append(handle)
        if handle.path not in self.buffers:
            return
        self._forget(handle.path)
        self.bus.publish(DocumentClosed(handle.path))

    async def focus_document(self, path: str, *, column: int | None = None) -> None:
        self.focus_calls.append((path, column))
        self.active = path
        self.bus.publish(ActiveEditorChanged(path, column))

    def is_dirty(self, path: str) -> bool:
        return path in self.dirty

    def get_text(self, path: str) -> str | None:
        return self.buffers.get(path)

    async def save_document(self, path: str) -> bool:
        text = self.buffers[path]
        event = DocumentWillSave(path, text)
        self.bus.publish(event)
        outcome = await event.settle()
        if not outcome.proceed:
            return False
        if outcome.text is not None:
            text = outcome.text
            self.buffers[path] = text
        Path(path).write_text(text, encoding="utf-8")
        self.dirty.discard(path)
        self.saved.append(path)
        self.bus.publish(DocumentSaved(path, text))
        return True

    async def replace_text(self, path: str, text: str) -> None:
        self.buffers[path] = text
        self.dirty.add(path)

    async def confirm(
        self, prompt: str, choices: Sequence[str], *, modal: bool = False
    ) -> str | None:
        self.prompts.append((prompt, tuple(choices), modal))
        if not self.confirm_answers:
            return None
        return self.confirm_answers.pop(0)

    # ------------------------------------------------------------------
    # User simulation
    # ------------------------------------------------------------------
    def user_open(self, path: str, *, column: int = ViewColumn.ONE) -> None:
        text = Path(path).read_text(encoding="utf-8")
        self.buffers[path] = text
        self.columns[path] = column
        self.bus.publish(DocumentOpened(path, text))
        self.user_focus(path, column=column)

    def user_focus(self, path: str, *, column: int | None = None) -> None:
        self.active = path
        self.bus.publish(ActiveEditorChanged(path, column or self.columns.get(path)))

    def user_edit(self, path: str, text: str) -> None:
        self.buffers[path] = text
        self.dirty.add(path)

    def user_close(self, path: str) -> None:
        self._forget(path)
        self.bus.publish(DocumentClosed(path))

    def is_open(self, path: str) -> bool:
        return path in self.buffers

    def _forget(self, path: str) -> None:
        self.buffers.pop(path, None)
        self.columns.pop(path, None)
        self.dirty.discard(path)
        if self.active == path:
            self.active = None

    def _resolve_column(self, column: int) -> int:
        if column == ViewColumn.BESIDE:
            return ViewColumn.TWO
        if column == ViewColumn.ACTIVE:
            return self.columns.get(self.active or "", ViewColumn.ONE)
        return column


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def write_fake_sops(directory: Path, body: str) -> Path:
    """Write an executable ``sops`` shell script running ``body``."""

    script = directory / "sops"
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def ephemeral_files(directory: str | Path | None) -> list[Path]:
    """Every file left in a temp directory."""

    target = Path(directory or "")
    if not target.exists():
        return []
    return sorted(target.iterdir())
