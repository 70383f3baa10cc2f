"""Tracks which source documents are currently held as plaintext."""

from __future__ import annotations

import logging

from ..interfaces import ContentClassifier, RuleMatcher
from .models import EncryptionState

__all__ = ["FileStateTracker", "resolve_encryption_state"]

LOGGER = logging.getLogger(__name__)


class FileStateTracker:
    """The decrypted-set: source paths decrypted in their own buffer and
    pending re-encryption on save."""

    def __init__(self) -> None:
        self._decrypted: set[str] = set()

    def mark_decrypted(self, path: str) -> None:
        self._decrypted.add(path)
        LOGGER.debug("Marked decrypted: %s", path)

    def mark_encrypted(self, path: str) -> None:
        self._decrypted.discard(path)
        LOGGER.debug("Marked encrypted: %s", path)

    def is_marked_decrypted(self, path: str) -> bool:
        return path in self._decrypted

    def clear(self) -> None:
        self._decrypted.clear()

    def __len__(self) -> int:
        return len(self._decrypted)


def resolve_encryption_state(
    path: str,
    content: str | None,
    *,
    rule_matcher: RuleMatcher,
    classifier: ContentClassifier,
    tracker: FileStateTracker,
) -> EncryptionState:
    """Compute the state of ``path`` from rules, tracker and content.

    ``DECRYPTED`` is reported only for members of the decrypted-set; anything
    else is re-classified from ``content`` (``None`` counts as plaintext).
    """

    if not rule_matcher.has_matching_rule(path):
        return EncryptionState.UNKNOWN
    if tracker.is_marked_decrypted(path):
        return EncryptionState.DECRYPTED
    if content is not None and classifier.is_encrypted(content):
        return EncryptionState.ENCRYPTED
    return EncryptionState.PLAINTEXT
