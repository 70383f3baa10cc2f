"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from sopsie.config import clear_regex_cache
from sopsie.context import WorkspaceContext
from sopsie.events import EventBus, NoticePosted
from sopsie.session.ephemeral_store import EphemeralFileStore
from sopsie.session.guard import GuardController
from sopsie.session.orchestrator import DecryptedViewManager
from sopsie.settings import Settings
from sopsie.utils.file_io import normalize_path

from tests.helpers import (
    FakeClock,
    FakeCryptoExecutor,
    FakeEditorSurface,
    StubClassifier,
    StubRuleMatcher,
    encrypted_text,
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("SOPSIE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SOPSIE_LOG_DIR", str(tmp_path / "logs"))
    clear_regex_cache()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def notices(bus: EventBus) -> list[NoticePosted]:
    received: list[NoticePosted] = []
    bus.subscribe(NoticePosted, received.append)
    return received


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def secrets_file(workspace: Path) -> str:
    path = workspace / "secrets.yaml"
    path.write_text(encrypted_text("password: hunter2\n"), encoding="utf-8")
    return normalize_path(path)


@pytest.fixture
def other_secrets_file(workspace: Path) -> str:
    path = workspace / "db-secrets.yaml"
    path.write_text(encrypted_text("user: admin\n"), encoding="utf-8")
    return normalize_path(path)


@pytest.fixture
def plain_file(workspace: Path) -> str:
    path = workspace / "README.md"
    path.write_text("# readme\n", encoding="utf-8")
    return normalize_path(path)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        open_behavior="showDecrypted",
        decrypted_view_mode="preview",
        temp_dir=str(tmp_path / "ephemeral"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def editor(bus: EventBus) -> FakeEditorSurface:
    return FakeEditorSurface(bus)


@pytest.fixture
def crypto() -> FakeCryptoExecutor:
    return FakeCryptoExecutor()


@pytest.fixture
def context(
    settings: Settings,
    bus: EventBus,
    editor: FakeEditorSurface,
    crypto: FakeCryptoExecutor,
    clock: FakeClock,
) -> WorkspaceContext:
    return WorkspaceContext(
        settings=settings,
        editor=editor,
        crypto=crypto,
        rule_matcher=StubRuleMatcher(),
        classifier=StubClassifier(),
        event_bus=bus,
        store=EphemeralFileStore(settings.temp_dir),
        guard=GuardController(settings.recently_closed_cooldown_ms / 1000.0, clock=clock),
    )


@pytest.fixture
def manager(context: WorkspaceContext):
    view_manager = DecryptedViewManager(context)
    yield view_manager
    view_manager.dispose_sync()

