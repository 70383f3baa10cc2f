"""SOPSie: decrypted-view lifecycle manager for SOPS-encrypted documents.

Hosts build a :class:`WorkspaceContext` (usually through :func:`build_context`),
hand it to :class:`DecryptedViewManager` and route editor events over its
event bus. :class:`SopsCommands` backs the user-facing commands.
"""

__version__ = "0.4.0"

from .commands import SopsCommands
from .context import WorkspaceContext, build_context
from .session import DecryptedViewManager

__all__ = [
    "__version__",
    "SopsCommands",
    "WorkspaceContext",
    "build_context",
    "DecryptedViewManager",
]
