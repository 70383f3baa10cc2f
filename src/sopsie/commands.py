"""User-invoked SOPS commands operating on the focused source document."""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import NoOriginatingSourceError, SopsError
from .session.models import Session, ShowDecryptedOptions
from .session.orchestrator import DecryptedViewManager
from .utils.file_io import normalize_path, try_read_text

__all__ = [
    "SopsCommands",
    "UPDATE_KEYS_PROMPT",
    "UPDATE_KEYS_CHOICE",
    "ROTATE_PROMPT",
    "ROTATE_CHOICE",
]

LOGGER = logging.getLogger(__name__)

UPDATE_KEYS_PROMPT = (
    "Update SOPS keys? This will re-encrypt the file with keys from .sops.yaml, "
    "which may change who can access this file."
)
UPDATE_KEYS_CHOICE = "Update Keys"
ROTATE_PROMPT = "Rotate the data key? This will re-encrypt all values with a new data key."
ROTATE_CHOICE = "Rotate"

_NOT_ENCRYPTED = "File is not SOPS-encrypted"
_ALREADY_ENCRYPTED = "File is already SOPS-encrypted"


class SopsCommands:
    """Decrypt/encrypt in place, key updates and data key rotation.

    Every command returns ``True`` when it changed something. Refusals and
    failures are posted as notices and return ``False``; nothing here raises
    :class:`~sopsie.errors.SopsError`.
    """

    def __init__(self, manager: DecryptedViewManager) -> None:
        self._manager = manager
        self._context = manager.context
        self._reporter = manager.reporter

    def _is_encrypted(self, path: str) -> bool:
        content = self._buffer_text(path)
        return content is not None and self._context.classifier.is_encrypted(content)

    def _buffer_text(self, path: str) -> str | None:
        text = self._context.editor.get_text(path)
        if text is None:
            LOGGER.debug("No open buffer for %s; reading it from disk", path)
            text = try_read_text(path)
        return text

    # ------------------------------------------------------------------
    # In-place conversions
    # ------------------------------------------------------------------
    async def decrypt_in_place(self, path: str) -> bool:
        """Replace the buffer of an encrypted document with its plaintext."""

        path = normalize_path(path)
        if not self._is_encrypted(path):
            self._reporter.warn(_NOT_ENCRYPTED)
            return False
        try:
            plaintext = await self._context.crypto.decrypt(path)
        except SopsError as exc:
            self._reporter.report(exc, title="Failed to decrypt")
            return False
        await self._context.editor.replace_text(path, plaintext)
        self._manager.mark_decrypted(path)
        self._reporter.info("File decrypted successfully")
        return True

    async def encrypt_in_place(self, path: str) -> bool:
        """Encrypt the buffer of a plaintext document and save it."""

        path = normalize_path(path)
        if self._is_encrypted(path):
            self._reporter.warn(_ALREADY_ENCRYPTED)
            return False
        content = self._buffer_text(path)
        if content is None:
            self._reporter.warn(f"Could not read {Path(path).name}")
            return False
        try:
            encrypted = await self._context.crypto.encrypt_content(content, path)
        except SopsError as exc:
            self._reporter.report(exc, title="Failed to encrypt")
            return False
        await self._context.editor.replace_text(path, encrypted)
        # Marked before saving so the will-save hook leaves the ciphertext alone
        self._manager.mark_encrypted(path)
        await self._context.editor.save_document(path)
        self._reporter.info("File encrypted successfully")
        return True

    # ------------------------------------------------------------------
    # Key management
    # ------------------------------------------------------------------
    async def update_keys(self, path: str) -> bool:
        path = normalize_path(path)
        if not self._is_encrypted(path):
            self._reporter.warn(f"{_NOT_ENCRYPTED}. Update keys only works on encrypted files.")
            return False
        if self._context.settings.confirm_update_keys and not await self._confirm(
            UPDATE_KEYS_PROMPT, UPDATE_KEYS_CHOICE
        ):
            return False
        try:
            await self._context.crypto.update_keys(path)
        except SopsError as exc:
            self._reporter.report(exc, title="Failed to update keys")
            return False
        self._manager.mark_encrypted(path)
        self._reporter.info("SOPS keys updated successfully")
        return True

    async def rotate(self, path: str) -> bool:
        path = normalize_path(path)
        if not self._is_encrypted(path):
            self._reporter.warn(f"{_NOT_ENCRYPTED}. Rotate only works on encrypted files.")
            return False
        if self._context.settings.confirm_rotate and not await self._confirm(ROTATE_PROMPT, ROTATE_CHOICE):
            return False
        try:
            await self._context.crypto.rotate(path)
        except SopsError as exc:
            self._reporter.report(exc, title="Failed to rotate data key")
            return False
        self._manager.mark_encrypted(path)
        self._reporter.info("SOPS data key rotated successfully")
        return True

    async def _confirm(self, prompt: str, choice: str) -> bool:
        answer = await self._context.editor.confirm(prompt, (choice,), modal=True)
        if answer != choice:
            LOGGER.debug("User declined: %s", prompt)
            return False
        return True

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    async def show_decrypted(self, path: str, *, column: int | None = None) -> Session | None:
        """Open a decrypted view of ``path`` in the configured view mode."""

        path = normalize_path(path)
        if not self._is_encrypted(path):
            self._reporter.warn(_NOT_ENCRYPTED)
            return None
        return await self._manager.open_decrypted_view(path, ShowDecryptedOptions(original_column=column))

    async def switch_to_edit_in_place(self, path: str) -> Session | None:
        """Turn the preview shown at ``path`` into an editable copy."""

        try:
            return await self._manager.switch_to_edit_mode(path)
        except NoOriginatingSourceError as exc:
            self._reporter.warn(f"Cannot switch to edit mode: {exc}")
            return None
