"""Decides what to do when a governed document is opened or saved."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from ..interfaces import RuleMatcher
from ..settings import Settings
from .models import EncryptionState
from .state_tracker import FileStateTracker

__all__ = [
    "OpenBehavior",
    "SaveBehavior",
    "ViewMode",
    "OpenAction",
    "SaveAction",
    "PromptChoice",
    "AutoBehaviorPolicy",
    "SAVE_PROMPT",
]

LOGGER = logging.getLogger(__name__)

SAVE_PROMPT = "This file is decrypted. How would you like to save?"


class OpenBehavior(str, Enum):
    SHOW_ENCRYPTED = "showEncrypted"
    AUTO_DECRYPT = "autoDecrypt"
    SHOW_DECRYPTED = "showDecrypted"


class SaveBehavior(str, Enum):
    MANUAL_ENCRYPT = "manualEncrypt"
    AUTO_ENCRYPT = "autoEncrypt"
    PROMPT = "prompt"


class ViewMode(str, Enum):
    PREVIEW = "preview"
    EDIT_IN_PLACE = "editInPlace"


class OpenAction(str, Enum):
    NONE = "none"
    AUTO_DECRYPT_IN_PLACE = "autoDecryptInPlace"
    OPEN_PREVIEW = "openPreview"
    OPEN_EDIT_IN_PLACE = "openEditInPlace"


class SaveAction(str, Enum):
    PROCEED_AS_IS = "proceedAsIs"
    AUTO_ENCRYPT = "autoEncrypt"
    PROMPT = "prompt"
    CANCEL = "cancel"


class PromptChoice(str, Enum):
    """Answers offered by the save prompt; values are the button labels."""

    ENCRYPT_AND_SAVE = "Encrypt & Save"
    SAVE_AS_IS = "Save Without Encryption"
    CANCEL = "Cancel"

    @classmethod
    def labels(cls) -> tuple[str, ...]:
        return tuple(choice.value for choice in cls)

    @classmethod
    def from_label(cls, label: str | None) -> PromptChoice:
        """Map a prompt answer back to a choice; dismissal counts as cancel."""
        for choice in cls:
            if choice.value == label:
                return choice
        return cls.CANCEL


class AutoBehaviorPolicy:
    """Pure decision logic over the current settings.

    Settings are read through ``settings_provider`` on every call so changes
    take effect without rebuilding the policy.
    """

    def __init__(
        self,
        settings_provider: Callable[[], Settings],
        rule_matcher: RuleMatcher,
        tracker: FileStateTracker,
    ) -> None:
        self._settings_provider = settings_provider
        self._rule_matcher = rule_matcher
        self._tracker = tracker

    # ------------------------------------------------------------------
    # Configured enums
    # ------------------------------------------------------------------
    @property
    def open_behavior(self) -> OpenBehavior:
        return _coerce(OpenBehavior, self._settings_provider().open_behavior, OpenBehavior.SHOW_ENCRYPTED)

    @property
    def save_behavior(self) -> SaveBehavior:
        return _coerce(SaveBehavior, self._settings_provider().save_behavior, SaveBehavior.MANUAL_ENCRYPT)

    @property
    def view_mode(self) -> ViewMode:
        return _coerce(ViewMode, self._settings_provider().decrypted_view_mode, ViewMode.PREVIEW)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def decide_on_open(
        self,
        path: str,
        state: EncryptionState,
        *,
        has_matching_rule: bool | None = None,
    ) -> OpenAction:
        """Choose the reaction to ``path`` being opened.

        Args:
            path: The opened source document.
            state: Its current encryption state.
            has_matching_rule: Pre-computed rule match; looked up when omitted.

        Returns:
            ``OpenAction.NONE`` unless the path is governed and encrypted;
            otherwise the action configured by ``open_behavior`` (and
            ``decrypted_view_mode`` for ``showDecrypted``).
        """

        matched = self._rule_matcher.has_matching_rule(path) if has_matching_rule is None else has_matching_rule
        if not matched or state is not EncryptionState.ENCRYPTED:
            return OpenAction.NONE

        behavior = self.open_behavior
        if behavior is OpenBehavior.AUTO_DECRYPT:
            return OpenAction.AUTO_DECRYPT_IN_PLACE
        if behavior is OpenBehavior.SHOW_DECRYPTED:
            if self.view_mode is ViewMode.EDIT_IN_PLACE:
                return OpenAction.OPEN_EDIT_IN_PLACE
            return OpenAction.OPEN_PREVIEW
        return OpenAction.NONE

    def decide_on_will_save(self, path: str) -> SaveAction:
        """``PROCEED_AS_IS`` unless ``path`` is in the decrypted-set."""

        if not self._tracker.is_marked_decrypted(path):
            return SaveAction.PROCEED_AS_IS
        behavior = self.save_behavior
        if behavior is SaveBehavior.AUTO_ENCRYPT:
            return SaveAction.AUTO_ENCRYPT
        if behavior is SaveBehavior.PROMPT:
            return SaveAction.PROMPT
        return SaveAction.PROCEED_AS_IS

    def resolve_prompt(self, choice: PromptChoice | str | None) -> SaveAction:
        """Translate the user's prompt answer into a save action.

        ``CANCEL`` and a dismissed prompt abort the save itself.
        """

        if not isinstance(choice, PromptChoice):
            choice = PromptChoice.from_label(choice)
        if choice is PromptChoice.ENCRYPT_AND_SAVE:
            return SaveAction.AUTO_ENCRYPT
        if choice is PromptChoice.SAVE_AS_IS:
            return SaveAction.PROCEED_AS_IS
        return SaveAction.CANCEL


def _coerce(enum_type, value, default):
    try:
        return enum_type(value)
    except ValueError:
        LOGGER.warning("Unknown %s '%s'; using %s", enum_type.__name__, value, default.value)
        return default
