"""Value types shared by the session components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..interfaces import EditorHandle, ViewColumn

__all__ = [
    "EncryptionState",
    "EphemeralKind",
    "EphemeralFile",
    "Presentation",
    "Session",
    "ShowDecryptedOptions",
    "FileStatus",
]


class EncryptionState(str, Enum):
    UNKNOWN = "unknown"
    ENCRYPTED = "encrypted"
    DECRYPTED = "decrypted"
    PLAINTEXT = "plaintext"


class EphemeralKind(str, Enum):
    PREVIEW = "preview"
    EDIT_IN_PLACE = "editInPlace"

    @property
    def marker(self) -> str:
        """Infix used in temp file names; purely informational."""
        return "sops-preview" if self is EphemeralKind.PREVIEW else "sops-edit"


@dataclass(slots=True, frozen=True)
class EphemeralFile:
    """A plaintext temp file holding the decrypted contents of a source."""

    path: str
    kind: EphemeralKind
    source_path: str
    read_only: bool
    view_column_hint: int | None = None


@dataclass(slots=True, frozen=True)
class Presentation:
    """Where a decrypted view lives relative to its source.

    Attributes:
        opened_in_column: Column the ephemeral view was opened in.
        original_column: Column the source document occupied.
        return_focus_to_source: Whether focus went back to the source after opening.
    """

    opened_in_column: int = ViewColumn.ACTIVE
    original_column: int | None = None
    return_focus_to_source: bool = False


@dataclass(slots=True)
class Session:
    """The tracked association between a source and its open ephemeral view."""

    source_path: str
    ephemeral: EphemeralFile
    presentation: Presentation
    handle: EditorHandle | None = None

    @property
    def kind(self) -> EphemeralKind:
        return self.ephemeral.kind

    @property
    def ephemeral_path(self) -> str:
        return self.ephemeral.path

    @property
    def opened_in_column(self) -> int:
        if self.handle is not None and self.handle.column is not None:
            return self.handle.column
        return self.presentation.opened_in_column


@dataclass(slots=True, frozen=True)
class ShowDecryptedOptions:
    """Caller preferences for opening a decrypted view.

    Attributes:
        preserve_focus: Keep focus on the currently active editor.
        show_info_message: Post an informational notice once an edit-in-place
            view is open.
        open_beside: Override ``open_decrypted_beside`` for this call.
        target_column: Explicit column to open in (wins over ``open_beside``).
        original_column: Column of the source document, if known.
    """

    preserve_focus: bool = False
    show_info_message: bool = True
    open_beside: bool | None = None
    target_column: int | None = None
    original_column: int | None = None


@dataclass(slots=True, frozen=True)
class FileStatus:
    """Summary used for status displays and the ``status`` CLI command."""

    path: str
    has_matching_rule: bool
    state: EncryptionState
    is_managed: bool = False
    has_open_view: bool = False
