"""Shared wiring handed to the decrypted-view manager and the commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .config import ConfigManager
from .events import EventBus
from .interfaces import ContentClassifier, CryptoExecutor, EditorSurface, RuleMatcher
from .session.ephemeral_store import EphemeralFileStore
from .session.guard import GuardController
from .session.state_tracker import FileStateTracker
from .settings import Settings, SettingsStore
from .sops import SopsDetector, SopsRunner

__all__ = ["WorkspaceContext", "build_context"]


@dataclass(slots=True)
class WorkspaceContext:
    """Collaborators for one workspace.

    Anything left as ``None`` is filled with the stock implementation: the
    SOPS CLI runner, the ``.sops.yaml`` lookup and the content detector.
    ``settings`` may be swapped through :meth:`update_settings`; components
    read it through :meth:`settings_provider` so the change applies on the
    next operation.
    """

    settings: Settings
    editor: EditorSurface
    crypto: CryptoExecutor | None = None
    rule_matcher: RuleMatcher | None = None
    classifier: ContentClassifier | None = None
    event_bus: EventBus = field(default_factory=EventBus)
    settings_store: SettingsStore | None = None
    store: EphemeralFileStore | None = None
    guard: GuardController | None = None
    tracker: FileStateTracker | None = None

    def __post_init__(self) -> None:
        if self.crypto is None:
            self.crypto = SopsRunner(self.settings_provider)
        if self.rule_matcher is None:
            self.rule_matcher = ConfigManager()
        if self.classifier is None:
            self.classifier = SopsDetector()
        if self.store is None:
            self.store = EphemeralFileStore(self.settings.temp_dir)
        if self.guard is None:
            self.guard = GuardController(self.settings.recently_closed_cooldown_ms / 1000.0)
        if self.tracker is None:
            self.tracker = FileStateTracker()

    def settings_provider(self) -> Settings:
        return self.settings

    def update_settings(self, settings: Settings) -> None:
        self.settings = settings
        if self.guard is not None:
            self.guard.cooldown_seconds = settings.recently_closed_cooldown_ms / 1000.0


def build_context(
    settings: Settings,
    editor: EditorSurface,
    *,
    root: Path | str | None = None,
    event_bus: EventBus | None = None,
    settings_store: SettingsStore | None = None,
) -> WorkspaceContext:
    """Wire the stock collaborators with rule lookups bounded by ``root``."""

    return WorkspaceContext(
        settings=settings,
        editor=editor,
        rule_matcher=ConfigManager(root),
        event_bus=event_bus or EventBus(),
        settings_store=settings_store,
    )
