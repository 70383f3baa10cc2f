"""On-disk temp files holding decrypted plaintext."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable

from ..errors import EphemeralFileError
from ..utils.file_io import make_read_only, remove_file, safe_stem
from .models import EphemeralFile, EphemeralKind

__all__ = ["EphemeralFileStore"]

LOGGER = logging.getLogger(__name__)


class EphemeralFileStore:
    """Creates and deletes plaintext temp files; no policy lives here.

    File names follow ``{stem}.sops-preview-{timestamp}{suffix}`` or
    ``{stem}.sops-edit-{timestamp}{suffix}`` so they keep the source's
    extension for syntax highlighting. Names are reserved synchronously before
    any I/O, so two overlapping creates for the same source never collide.
    """

    def __init__(
        self,
        temp_dir: Path | str | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        # Resolved so generated names match the normalized paths editor events carry
        self._temp_dir = Path(temp_dir or tempfile.gettempdir()).expanduser().resolve()
        self._clock = clock
        self._reserved: set[str] = set()
        self._live: dict[str, EphemeralFile] = {}

    @property
    def temp_dir(self) -> Path:
        return self._temp_dir

    def live_files(self) -> list[EphemeralFile]:
        """Files created by this store that have not been deleted yet."""

        return list(self._live.values())

    def get(self, path: str) -> EphemeralFile | None:
        return self._live.get(path)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def create(
        self,
        source_path: str,
        text: str,
        kind: EphemeralKind,
        *,
        view_column_hint: int | None = None,
    ) -> EphemeralFile:
        """Write ``text`` to a fresh temp file for ``source_path``.

        Raises:
            EphemeralFileError: If the file could not be written. Nothing is
                left on disk in that case.
        """

        target = self._reserve_path(source_path, kind)
        read_only = kind is EphemeralKind.PREVIEW
        write = asyncio.ensure_future(asyncio.to_thread(_write_new_file, target, text, read_only))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; clean up once it finishes
            write.add_done_callback(lambda _: self.delete_sync(target))
            raise
        except OSError as exc:
            self._reserved.discard(target)
            LOGGER.warning("Failed to create temp file for %s: %s", source_path, exc)
            raise EphemeralFileError(
                f"Could not create temporary file for {Path(source_path).name}: {exc}",
                source_path=source_path,
            ) from exc

        ephemeral = EphemeralFile(
            path=target,
            kind=kind,
            source_path=source_path,
            read_only=read_only,
            view_column_hint=view_column_hint,
        )
        self._live[target] = ephemeral
        LOGGER.debug("Created %s temp file %s -> %s", kind.value, target, source_path)
        return ephemeral

    def _reserve_path(self, source_path: str, kind: EphemeralKind) -> str:
        source = Path(source_path)
        stem = safe_stem(source.stem)
        stamp = int(self._clock() * 1000)
        base = f"{stem}.{kind.marker}-{stamp}"
        candidate = str(self._temp_dir / f"{base}{source.suffix}")
        counter = 1
        while candidate in self._reserved or os.path.lexists(candidate):
            candidate = str(self._temp_dir / f"{base}-{counter}{source.suffix}")
            counter += 1
        self._reserved.add(candidate)
        return candidate

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    async def delete(self, path: str) -> bool:
        """Delete ``path`` off the event loop; see :meth:`delete_sync`."""

        return await asyncio.to_thread(self.delete_sync, path)

    def delete_sync(self, path: str) -> bool:
        """Remove ``path`` and forget it.

        Idempotent: returns ``True`` only for the call that actually removed
        the file. Failures are logged and reported as ``False``.
        """

        self._live.pop(path, None)
        self._reserved.discard(path)
        try:
            removed = remove_file(path)
        except OSError as exc:
            LOGGER.warning("Could not delete temp file %s: %s", path, exc)
            return False
        if removed:
            LOGGER.debug("Deleted temp file %s", path)
        return removed

    def delete_all_sync(self) -> int:
        """Delete every live file; returns how many were removed."""

        removed = 0
        for path in list(self._live):
            if self.delete_sync(path):
                removed += 1
        return removed


def _write_new_file(path: str, text: str, read_only: bool) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
    except OSError:
        remove_file(path)
        raise
    if read_only:
        make_read_only(path)
