"""Asynchronous wrapper around the ``sops`` command line tool."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable, Mapping, Sequence

from ..errors import SopsError, SopsErrorKind
from ..settings import Settings

__all__ = ["SopsRunner", "input_type_for", "classify_failure"]

LOGGER = logging.getLogger(__name__)

_VERSION_TIMEOUT = 5.0
_INPUT_TYPES: Mapping[str, str] = {
    "json": "json",
    "env": "dotenv",
    "ini": "ini",
    "yaml": "yaml",
    "yml": "yaml",
}


def input_type_for(path: str | Path) -> str:
    """Map a file extension onto the SOPS ``--input-type`` name."""

    suffix = Path(path).suffix.lstrip(".").lower()
    return _INPUT_TYPES.get(suffix, "binary")


def classify_failure(stderr: str, returncode: int | None) -> SopsError:
    """Turn a non-zero SOPS exit into a typed :class:`SopsError`."""

    lowered = stderr.lower()
    if (
        "could not decrypt" in lowered
        or "failed to get the data key" in lowered
        or "cannot find key" in lowered
    ):
        return SopsError(
            SopsErrorKind.KEY_ACCESS_DENIED,
            "Unable to decrypt file - key access denied",
            details=stderr,
        )
    if "config file not found" in lowered or ".sops.yaml" in lowered:
        return SopsError(
            SopsErrorKind.CONFIG_NOT_FOUND,
            "No .sops.yaml configuration found",
            details=stderr,
        )
    if "error parsing" in lowered or "yaml:" in lowered:
        return SopsError(SopsErrorKind.INVALID_FILE, "Invalid file format", details=stderr)
    # Case-sensitive, unlike the checks above
    if "encrypt" in stderr:
        return SopsError(SopsErrorKind.ENCRYPTION_FAILED, "Encryption failed", details=stderr)
    if "decrypt" in stderr:
        return SopsError(SopsErrorKind.DECRYPTION_FAILED, "Decryption failed", details=stderr)
    return SopsError(
        SopsErrorKind.UNKNOWN,
        f"SOPS failed with code {returncode}",
        details=stderr,
    )


class SopsRunner:
    """Runs SOPS operations in a subprocess.

    Every call resolves the executable and timeout from the current settings,
    runs with the file's directory as working directory (so SOPS finds the
    nearest ``.sops.yaml``) and disables the SOPS version check.
    """

    def __init__(self, settings_provider: Callable[[], Settings]) -> None:
        self._settings_provider = settings_provider

    # ------------------------------------------------------------------
    # Crypto operations
    # ------------------------------------------------------------------
    async def decrypt(self, path: str) -> str:
        """Return the plaintext of the encrypted file at ``path``."""

        file_type = input_type_for(path)
        LOGGER.debug("Decrypting %s (type=%s)", path, file_type)
        if file_type == "binary":
            args = ["--decrypt", "--input-type", "binary", "--output-type", "binary", path]
        else:
            args = ["--decrypt", path]
        return await self._run_sops(args, path)

    async def encrypt(self, path: str) -> str:
        """Return the ciphertext of the plaintext file at ``path``."""

        file_type = input_type_for(path)
        LOGGER.debug("Encrypting %s (type=%s)", path, file_type)
        if file_type == "binary":
            args = ["--encrypt", "--input-type", "binary", "--output-type", "binary", path]
        else:
            args = ["--encrypt", path]
        return await self._run_sops(args, path)

    async def encrypt_content(self, content: str, path: str) -> str:
        """Encrypt ``content`` read from stdin using the creation rule for ``path``."""

        file_type = input_type_for(path)
        LOGGER.debug("Encrypting content for %s (type=%s)", path, file_type)
        args = [
            "--encrypt",
            "--input-type",
            file_type,
            "--output-type",
            file_type,
            "--filename-override",
            path,
            "/dev/stdin",
        ]
        return await self._run_sops(args, path, stdin=content)

    async def update_keys(self, path: str) -> None:
        """Re-encrypt the data key for the recipients currently listed in ``.sops.yaml``."""

        LOGGER.debug("Updating keys for %s", path)
        await self._run_sops(["updatekeys", "--yes", path], path)

    async def rotate(self, path: str) -> None:
        """Re-encrypt every value of ``path`` with a fresh data key."""

        LOGGER.debug("Rotating data key for %s", path)
        await self._run_sops(["rotate", "--in-place", path], path)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    async def check_cli_available(self) -> bool:
        return await self.get_version() is not None

    async def get_version(self) -> str | None:
        """Return ``sops --version`` output, or ``None`` when SOPS cannot run."""

        settings = self._settings_provider()
        try:
            output = await self._run_command(
                settings.sops_path,
                ["--version"],
                cwd=None,
                stdin=None,
                timeout=_VERSION_TIMEOUT,
                grace=settings.kill_grace_seconds,
            )
        except SopsError as exc:
            LOGGER.debug("SOPS CLI check failed: %s", exc)
            return None
        return output.strip()

    # ------------------------------------------------------------------
    # Subprocess plumbing
    # ------------------------------------------------------------------
    async def _run_sops(self, args: Sequence[str], path: str, *, stdin: str | None = None) -> str:
        settings = self._settings_provider()
        return await self._run_command(
            settings.sops_path,
            args,
            cwd=_working_directory(path),
            stdin=stdin,
            timeout=settings.decryption_timeout,
            grace=settings.kill_grace_seconds,
        )

    async def _run_command(
        self,
        cmd: str,
        args: Sequence[str],
        *,
        cwd: str | None,
        stdin: str | None,
        timeout: float,
        grace: float,
    ) -> str:
        env = dict(os.environ)
        env["SOPS_DISABLE_VERSION_CHECK"] = "1"
        try:
            proc = await asyncio.create_subprocess_exec(
                cmd,
                *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise SopsError(SopsErrorKind.CLI_NOT_FOUND, f'SOPS CLI not found at "{cmd}"') from exc
        except OSError as exc:
            raise SopsError(SopsErrorKind.UNKNOWN, f"Failed to run SOPS: {exc}") from exc

        payload = stdin.encode("utf-8") if stdin is not None else None
        start_time = time.perf_counter()
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("SOPS %s timed out after %.1fs", args[0] if args else cmd, timeout)
            await _terminate(proc, grace)
            raise SopsError(
                SopsErrorKind.TIMEOUT,
                f"Operation timed out after {int(timeout * 1000)}ms",
            ) from None
        except asyncio.CancelledError:
            await _terminate(proc, grace)
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        stderr_text = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            LOGGER.debug("SOPS exited with %s after %.1fms: %s", proc.returncode, duration_ms, stderr_text.strip())
            raise classify_failure(stderr_text, proc.returncode)
        LOGGER.debug("SOPS completed in %.1fms", duration_ms)
        return stdout.decode("utf-8", errors="replace")


def _working_directory(path: str) -> str | None:
    parent = Path(path).parent
    return str(parent) if parent.is_dir() else None


async def _terminate(proc: asyncio.subprocess.Process, grace: float) -> None:
    """Send SIGTERM, then SIGKILL if the process outlives ``grace`` seconds."""

    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        LOGGER.debug("SOPS pid %s ignored SIGTERM; killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
