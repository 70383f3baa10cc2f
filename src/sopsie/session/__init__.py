"""Decrypted-view lifecycle: temp files, sessions, guards and the manager."""

from .ephemeral_store import EphemeralFileStore
from .guard import GuardController
from .models import (
    EncryptionState,
    EphemeralFile,
    EphemeralKind,
    FileStatus,
    Presentation,
    Session,
    ShowDecryptedOptions,
)
from .orchestrator import UNSAVED_CHANGES_PROMPT, DecryptedViewManager
from .policy import (
    SAVE_PROMPT,
    AutoBehaviorPolicy,
    OpenAction,
    OpenBehavior,
    PromptChoice,
    SaveAction,
    SaveBehavior,
    ViewMode,
)
from .registry import SessionRegistry
from .state_tracker import FileStateTracker, resolve_encryption_state

__all__ = [
    "EphemeralFileStore",
    "GuardController",
    "EncryptionState",
    "EphemeralFile",
    "EphemeralKind",
    "FileStatus",
    "Presentation",
    "Session",
    "ShowDecryptedOptions",
    "DecryptedViewManager",
    "UNSAVED_CHANGES_PROMPT",
    "SAVE_PROMPT",
    "AutoBehaviorPolicy",
    "OpenAction",
    "OpenBehavior",
    "PromptChoice",
    "SaveAction",
    "SaveBehavior",
    "ViewMode",
    "SessionRegistry",
    "FileStateTracker",
    "resolve_encryption_state",
]
