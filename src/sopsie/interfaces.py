"""Protocols for the collaborators the decrypted-view manager depends on.

The manager never talks to SOPS, the rule file or the editor directly; it
goes through these seams so hosts (and tests) can plug in their own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Protocol, Sequence, runtime_checkable

__all__ = [
    "ViewColumn",
    "OpenOptions",
    "EditorHandle",
    "RuleMatcher",
    "ContentClassifier",
    "CryptoExecutor",
    "EditorSurface",
]


class ViewColumn(IntEnum):
    """Editor column identifiers; negative values are relative placements."""

    ACTIVE = -1
    BESIDE = -2
    ONE = 1
    TWO = 2
    THREE = 3


@dataclass(slots=True, frozen=True)
class OpenOptions:
    """How the editor should present a document it is asked to open."""

    column: int = ViewColumn.ACTIVE
    preserve_focus: bool = False
    read_only: bool = False


@dataclass(slots=True, frozen=True)
class EditorHandle:
    """Opaque reference to an open editor tab."""

    path: str
    column: int | None = None


@runtime_checkable
class RuleMatcher(Protocol):
    """Answers whether a path is governed by a creation rule."""

    def has_matching_rule(self, path: str) -> bool:
        ...


@runtime_checkable
class ContentClassifier(Protocol):
    """Answers whether a text blob carries SOPS metadata."""

    def is_encrypted(self, content: str) -> bool:
        ...


class CryptoExecutor(Protocol):
    """Runs SOPS operations; every method raises :class:`~sopsie.errors.SopsError`."""

    async def decrypt(self, path: str) -> str:
        ...

    async def encrypt_content(self, content: str, path: str) -> str:
        ...

    async def update_keys(self, path: str) -> None:
        ...

    async def rotate(self, path: str) -> None:
        ...


class EditorSurface(Protocol):
    """The slice of the host editor the manager drives.

    Documents are addressed by normalised absolute path. The host is expected
    to publish :mod:`sopsie.events` editor events for documents it opens and
    closes, including those opened through this surface.
    """

    async def open_document(self, path: str, options: OpenOptions) -> EditorHandle:
        ...

    async def close_document(self, handle: EditorHandle) -> None:
        ...

    async def focus_document(self, path: str, *, column: int | None = None) -> None:
        ...

    def is_dirty(self, path: str) -> bool:
        ...

    def get_text(self, path: str) -> str | None:
        ...

    async def save_document(self, path: str) -> None:
        ...

    async def replace_text(self, path: str, text: str) -> None:
        ...

    async def confirm(
        self, prompt: str, choices: Sequence[str], *, modal: bool = False
    ) -> str | None:
        """Ask the user to pick one of ``choices``; ``None`` means dismissed."""
        ...
