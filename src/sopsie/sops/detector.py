"""Heuristic detection of SOPS-encrypted content."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ..utils.file_io import read_text

__all__ = ["SopsDetector"]

LOGGER = logging.getLogger(__name__)

_SOPS_KEY = re.compile(r"""["']?sops["']?\s*:""", re.MULTILINE)
_METADATA_KEY = re.compile(r"""["']?(mac|lastmodified|version)["']?\s*:""")
_INI_SECTION = re.compile(r"^\[sops\]\s*$", re.MULTILINE)
_INI_METADATA_KEY = re.compile(r"^(mac|lastmodified|version)\s*=", re.MULTILINE)
_DOTENV_MARKERS = ("sops_version=", "sops_mac=")


class SopsDetector:
    """Looks for the metadata block SOPS attaches to every encrypted file.

    YAML and JSON files carry a ``sops`` mapping with ``mac``, ``version`` and
    ``lastmodified`` keys, INI files a ``[sops]`` section, dotenv files
    ``sops_*`` prefixed keys and binary files a ``SOPS`` prefix.
    """

    def is_encrypted(self, content: str) -> bool:
        if "sops" not in content:
            return False

        if _SOPS_KEY.search(content):
            # A bare "sops" key is not enough; require SOPS metadata too
            return _METADATA_KEY.search(content) is not None

        if _INI_SECTION.search(content):
            return _INI_METADATA_KEY.search(content) is not None

        if any(marker in content for marker in _DOTENV_MARKERS):
            return True

        return content.startswith("SOPS")

    def is_file_encrypted(self, path: Path | str) -> bool:
        """Read ``path`` and classify it; unreadable files count as not encrypted."""

        try:
            text = read_text(path, errors="replace")
        except OSError as exc:
            LOGGER.debug("Failed to read %s for encryption check: %s", path, exc)
            return False
        return self.is_encrypted(text)
