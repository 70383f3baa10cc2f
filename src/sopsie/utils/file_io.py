"""File IO helpers shared by the ephemeral store, the runner and the CLI."""

from __future__ import annotations

import codecs
import locale
import os
import re
import stat
import tempfile
from pathlib import Path

__all__ = [
    "normalize_path",
    "read_text",
    "try_read_text",
    "write_text",
    "make_read_only",
    "remove_file",
    "safe_stem",
]

# Longest marks first so UTF-32 LE is not mistaken for UTF-16 LE
_BYTE_ORDER_MARKS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF32_LE, "utf-32-le"),
    (codecs.BOM_UTF32_BE, "utf-32-be"),
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)


def normalize_path(path: Path | str) -> str:
    """Return the canonical string form used as a registry key."""

    return str(Path(path).expanduser().resolve())


def read_text(
    path: Path | str,
    *,
    encoding: str | None = None,
    errors: str = "strict",
    normalize_newlines: bool = False,
) -> str:
    """Decode a file, honouring a byte order mark and dropping it from the result.

    Without a mark or an explicit ``encoding``, UTF-8 is tried first, then the
    locale's preferred encoding, then Latin-1.
    """

    raw = Path(path).read_bytes()
    if encoding is None:
        encoding, raw = _sniff_encoding(raw)
    text = raw.decode(encoding, errors=errors)
    if normalize_newlines and "\r" in text:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text


def try_read_text(path: Path | str) -> str | None:
    """Like :func:`read_text` but returns ``None`` when the file cannot be read."""

    try:
        return read_text(path, errors="replace")
    except OSError:
        return None


def write_text(
    path: Path | str,
    content: str,
    *,
    encoding: str = "utf-8",
    mode: int | None = None,
) -> Path:
    """Replace ``path`` atomically with ``content``.

    The data goes to a sibling file from ``mkstemp`` (owner read/write only)
    which is then moved over the target with ``os.replace``. An existing
    target's permission bits are carried over unless ``mode`` is given.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if mode is None and target.exists():
        mode = stat.S_IMODE(target.stat().st_mode)

    descriptor, staging = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(staging, mode)
        os.replace(staging, target)
    except BaseException:
        Path(staging).unlink(missing_ok=True)
        raise
    return target


def make_read_only(path: Path | str) -> None:
    """Drop write permission bits from ``path``."""

    os.chmod(path, stat.S_IRUSR)


def remove_file(path: Path | str) -> bool:
    """Delete ``path`` if present; return ``True`` only when a file was removed.

    Read-only files are made writable first so the call also succeeds on
    platforms that refuse to unlink them.
    """

    target = Path(path)
    try:
        os.chmod(target, stat.S_IRUSR | stat.S_IWUSR)
        target.unlink()
    except FileNotFoundError:
        return False
    return True


def safe_stem(name: str) -> str:
    """Return a filesystem-friendly version of a file stem."""

    slug = re.sub(r"[^A-Za-z0-9._-]", "_", name).strip("._")
    return slug or "untitled"


def _sniff_encoding(raw: bytes) -> tuple[str, bytes]:
    for mark, encoding in _BYTE_ORDER_MARKS:
        if raw.startswith(mark):
            return encoding, raw[len(mark):]
    candidates = dict.fromkeys(("utf-8", locale.getpreferredencoding(False) or "utf-8", "latin-1"))
    for candidate in candidates:
        try:
            raw.decode(candidate)
        except UnicodeDecodeError:
            continue
        return candidate, raw
    return "latin-1", raw
