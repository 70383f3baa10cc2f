"""Tests for the decrypted-view manager."""

from __future__ import annotations

import asyncio
import os
import stat
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from sopsie.context import WorkspaceContext
from sopsie.errors import NoOriginatingSourceError, SopsError, SopsErrorKind
from sopsie.events import EncryptionStateChanged, NoticePosted, SessionClosed, SessionOpened
from sopsie.interfaces import ViewColumn
from sopsie.session.models import EncryptionState, EphemeralKind, ShowDecryptedOptions
from sopsie.session.orchestrator import UNSAVED_CHANGES_PROMPT, DecryptedViewManager
from sopsie.session.policy import SAVE_PROMPT, PromptChoice

from tests.helpers import (
    FakeEditorSurface,
    StubClassifier,
    StubRuleMatcher,
    encrypted_text,
    ephemeral_files,
    write_fake_sops,
)


def _mode(path: str) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_opening_governed_file_shows_preview_beside_and_paired_close_cleans_up(
    manager, editor, settings, secrets_file
) -> None:
    editor.user_open(secrets_file)
    await manager.wait_idle()

    session = manager.get_session(secrets_file)
    assert session is not None
    assert session.kind is EphemeralKind.PREVIEW
    preview = session.ephemeral_path
    assert Path(preview).read_text(encoding="utf-8") == "plain: secrets.yaml\n"
    assert _mode(preview) & 0o222 == 0
    assert editor.is_open(preview)
    opened_path, options = editor.open_calls[-1]
    assert opened_path == preview
    assert options.column == ViewColumn.BESIDE
    assert options.read_only is True
    assert options.preserve_focus is True

    editor.user_close(secrets_file)
    await manager.wait_idle()

    assert not Path(preview).exists()
    assert not editor.is_open(preview)
    assert len(manager.registry) == 0
    assert ephemeral_files(settings.temp_dir) == []


@pytest.mark.asyncio
async def test_switch_to_edit_mode_replaces_preview_in_same_column(
    manager, editor, secrets_file
) -> None:
    editor.user_open(secrets_file)
    await manager.wait_idle()
    preview = manager.get_session(secrets_file).ephemeral_path

    session = await manager.switch_to_edit_mode(preview)

    assert session is not None
    assert session.kind is EphemeralKind.EDIT_IN_PLACE
    edit_copy = session.ephemeral_path
    assert not Path(preview).exists()
    assert not editor.is_open(preview)
    assert Path(edit_copy).exists()
    assert _mode(edit_copy) & stat.S_IWUSR
    assert manager.is_managed_file(edit_copy)
    assert not manager.is_managed_file(preview)
    _, options = editor.open_calls[-1]
    assert options.column == ViewColumn.TWO
    assert options.read_only is False


@pytest.mark.asyncio
async def test_saving_edit_copy_encrypts_back_to_source(
    manager, editor, context, crypto, notices, secrets_file
) -> None:
    context.update_settings(replace(context.settings, save_behavior="autoEncrypt"))
    manager.mark_decrypted(secrets_file)
    session = await manager.open_edit_in_place(secrets_file)
    assert session is not None
    edit_copy = session.ephemeral_path

    editor.user_edit(edit_copy, "password: changed\n")
    assert await editor.save_document(edit_copy) is True
    await manager.wait_idle()

    assert crypto.encrypt_calls == [("password: changed\n", secrets_file)]
    assert Path(secrets_file).read_text(encoding="utf-8") == encrypted_text("password: changed\n")
    assert manager.encryption_state(secrets_file) is not EncryptionState.DECRYPTED
    assert notices[-1].message == "Encrypted and saved to secrets.yaml"
    # The copy stays open until the user closes it
    assert Path(edit_copy).exists()


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script as sops")
async def test_decrypt_timeout_leaves_no_session_and_reports(
    settings, bus, editor, notices, tmp_path, secrets_file
) -> None:
    script = write_fake_sops(tmp_path, "exec sleep 5")
    context = WorkspaceContext(
        settings=replace(settings, sops_path=str(script), decryption_timeout_ms=200, kill_grace_seconds=0.5),
        editor=editor,
        rule_matcher=StubRuleMatcher(),
        classifier=StubClassifier(),
        event_bus=bus,
    )
    manager = DecryptedViewManager(context)
    try:
        session = await manager.open_preview(secrets_file)

        assert session is None
        assert len(manager.registry) == 0
        assert ephemeral_files(settings.temp_dir) == []
        assert editor.open_calls == []
        assert notices[-1].error_kind == SopsErrorKind.TIMEOUT.value
        assert notices[-1].level == "error"
    finally:
        await manager.dispose()


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_overlapping_opens_for_one_source_install_a_single_session(
    manager, crypto, settings, secrets_file
) -> None:
    gate = asyncio.Event()
    crypto.decrypt_gates[secrets_file] = gate

    first = asyncio.create_task(manager.open_preview(secrets_file))
    second = asyncio.create_task(manager.open_preview(secrets_file))
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(first, second)

    assert results[0] is None
    assert results[1] is not None
    assert len(manager.registry) == 1
    assert ephemeral_files(settings.temp_dir) == [Path(results[1].ephemeral_path)]


@pytest.mark.asyncio
async def test_reopening_a_source_replaces_the_previous_view(
    manager, editor, settings, secrets_file
) -> None:
    first = await manager.open_preview(secrets_file)
    second = await manager.open_preview(secrets_file)

    assert first is not None and second is not None
    assert first.ephemeral_path != second.ephemeral_path
    assert manager.get_session(secrets_file) is second
    assert not editor.is_open(first.ephemeral_path)
    assert ephemeral_files(settings.temp_dir) == [Path(second.ephemeral_path)]


@pytest.mark.asyncio
async def test_duplicate_close_notifications_delete_once(
    manager, context, editor, bus, secrets_file, monkeypatch
) -> None:
    closed: list[SessionClosed] = []
    bus.subscribe(SessionClosed, closed.append)
    session = await manager.open_preview(secrets_file)
    deletions: list[str] = []
    original_delete = context.store.delete

    async def counting_delete(path: str) -> bool:
        deletions.append(path)
        return await original_delete(path)

    monkeypatch.setattr(context.store, "delete", counting_delete)

    editor.user_close(session.ephemeral_path)
    editor.user_close(session.ephemeral_path)
    await manager.wait_idle()

    assert deletions == [session.ephemeral_path]
    assert len(closed) == 1
    assert not Path(session.ephemeral_path).exists()
    assert manager.registry.untrack(session.ephemeral_path) is None


@pytest.mark.asyncio
async def test_close_all_views_closes_tabs_and_files(
    manager, editor, settings, secrets_file, other_secrets_file
) -> None:
    first = await manager.open_preview(secrets_file)
    second = await manager.open_edit_in_place(other_secrets_file)

    assert await manager.close_all_views() == 2

    assert len(manager.registry) == 0
    assert not editor.is_open(first.ephemeral_path)
    assert not editor.is_open(second.ephemeral_path)
    assert ephemeral_files(settings.temp_dir) == []
    assert await manager.close_all_views() == 0


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
async def test_symlinked_temp_dir_still_recognises_own_files(
    settings, bus, editor, crypto, tmp_path, secrets_file
) -> None:
    real = tmp_path / "real-tmp"
    real.mkdir()
    link = tmp_path / "linked-tmp"
    link.symlink_to(real, target_is_directory=True)
    context = WorkspaceContext(
        settings=replace(settings, temp_dir=str(link)),
        editor=editor,
        crypto=crypto,
        rule_matcher=StubRuleMatcher(),
        classifier=StubClassifier(),
        event_bus=bus,
    )
    manager = DecryptedViewManager(context)
    try:
        session = await manager.open_preview(secrets_file)
        assert session is not None
        assert manager.is_managed_file(session.ephemeral_path)
        assert manager.is_managed_file(str(link / Path(session.ephemeral_path).name))

        editor.user_close(session.ephemeral_path)
        await manager.wait_idle()

        assert len(manager.registry) == 0
        assert not Path(session.ephemeral_path).exists()
        assert list(real.iterdir()) == []
    finally:
        await manager.dispose()


@pytest.mark.asyncio
async def test_dispose_lets_a_pending_encrypt_back_finish(
    manager, context, editor, crypto, secrets_file
) -> None:
    context.update_settings(replace(context.settings, save_behavior="autoEncrypt"))
    session = await manager.open_edit_in_place(secrets_file)
    edit_copy = session.ephemeral_path
    crypto.encrypt_gate = asyncio.Event()

    editor.user_edit(edit_copy, "password: changed\n")
    assert await editor.save_document(edit_copy) is True
    disposing = asyncio.create_task(manager.dispose())
    await asyncio.sleep(0.01)
    assert not disposing.done()

    crypto.encrypt_gate.set()
    await disposing

    assert Path(secrets_file).read_text(encoding="utf-8") == encrypted_text("password: changed\n")
    assert not Path(edit_copy).exists()
    assert manager.disposed


@pytest.mark.asyncio
async def test_dispose_removes_every_temp_file(
    manager, editor, crypto, settings, secrets_file, other_secrets_file
) -> None:
    await manager.open_preview(secrets_file)
    await manager.open_edit_in_place(other_secrets_file)
    gate = asyncio.Event()
    third = Path(secrets_file).with_name("third-secrets.yaml")
    third.write_text(encrypted_text("k: v\n"), encoding="utf-8")
    crypto.decrypt_gates[str(third)] = gate
    pending = asyncio.create_task(manager.open_preview(str(third)))
    await asyncio.sleep(0)

    await manager.dispose()
    gate.set()
    assert await pending is None

    assert len(manager.registry) == 0
    assert ephemeral_files(settings.temp_dir) == []
    assert manager.disposed


@pytest.mark.asyncio
async def test_prompt_cancel_aborts_the_save(
    manager, context, editor, secrets_file
) -> None:
    context.update_settings(replace(context.settings, open_behavior="showEncrypted", save_behavior="prompt"))
    editor.user_open(secrets_file)
    await manager.wait_idle()
    manager.mark_decrypted(secrets_file)
    editor.user_edit(secrets_file, "password: hunter2\n")
    before = Path(secrets_file).read_text(encoding="utf-8")
    editor.confirm_answers = [PromptChoice.CANCEL.value]

    saved = await editor.save_document(secrets_file)

    assert saved is False
    assert Path(secrets_file).read_text(encoding="utf-8") == before
    assert manager.encryption_state(secrets_file) is EncryptionState.DECRYPTED
    prompt, choices, modal = editor.prompts[-1]
    assert prompt == SAVE_PROMPT
    assert choices == PromptChoice.labels()
    assert modal is True


@pytest.mark.asyncio
async def test_dismissed_save_prompt_counts_as_cancel(manager, context, editor, secrets_file) -> None:
    context.update_settings(replace(context.settings, open_behavior="showEncrypted", save_behavior="prompt"))
    editor.user_open(secrets_file)
    await manager.wait_idle()
    manager.mark_decrypted(secrets_file)
    editor.user_edit(secrets_file, "password: hunter2\n")

    assert await editor.save_document(secrets_file) is False
    assert manager.encryption_state(secrets_file) is EncryptionState.DECRYPTED


@pytest.mark.asyncio
async def test_prompt_encrypt_and_save_writes_ciphertext(manager, context, editor, crypto, secrets_file) -> None:
    context.update_settings(replace(context.settings, open_behavior="showEncrypted", save_behavior="prompt"))
    editor.user_open(secrets_file)
    await manager.wait_idle()
    manager.mark_decrypted(secrets_file)
    editor.user_edit(secrets_file, "password: new\n")
    editor.confirm_answers = [PromptChoice.ENCRYPT_AND_SAVE.value]

    assert await editor.save_document(secrets_file) is True

    assert Path(secrets_file).read_text(encoding="utf-8") == encrypted_text("password: new\n")
    assert crypto.encrypt_calls == [("password: new\n", secrets_file)]
    assert manager.encryption_state(secrets_file) is EncryptionState.ENCRYPTED


@pytest.mark.asyncio
async def test_auto_encrypt_failure_keeps_plaintext_and_reports(
    manager, context, editor, crypto, notices, secrets_file
) -> None:
    context.update_settings(replace(context.settings, open_behavior="showEncrypted", save_behavior="autoEncrypt"))
    editor.user_open(secrets_file)
    await manager.wait_idle()
    manager.mark_decrypted(secrets_file)
    editor.user_edit(secrets_file, "password: plain\n")
    crypto.failures["encrypt_content"] = SopsError(SopsErrorKind.KEY_ACCESS_DENIED, "key access denied")

    assert await editor.save_document(secrets_file) is True

    assert Path(secrets_file).read_text(encoding="utf-8") == "password: plain\n"
    assert manager.encryption_state(secrets_file) is EncryptionState.DECRYPTED
    assert notices[-1].error_kind == SopsErrorKind.KEY_ACCESS_DENIED.value
    assert "Key Configuration Guide" in notices[-1].actions


# ---------------------------------------------------------------------------
# Guard and cooldown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_own_editor_calls_do_not_retrigger_handlers(manager, editor, crypto, secrets_file) -> None:
    manager.context.update_settings(replace(manager.context.settings, open_decrypted_beside=False))

    session = await manager.open_preview(secrets_file)
    await manager.wait_idle()

    # The surface published opened/focused events for the preview while opening it
    assert editor.active == session.ephemeral_path
    assert crypto.decrypt_calls == [secrets_file]
    assert len(manager.registry) == 1


@pytest.mark.asyncio
async def test_user_closing_preview_suppresses_immediate_reopen(
    manager, editor, clock, crypto, secrets_file
) -> None:
    editor.user_open(secrets_file)
    await manager.wait_idle()
    preview = manager.get_session(secrets_file).ephemeral_path

    editor.user_close(preview)
    editor.user_focus(secrets_file)
    await manager.wait_idle()

    assert manager.get_session(secrets_file) is None
    assert crypto.decrypt_calls == [secrets_file]

    clock.advance(1.0)
    editor.user_focus(secrets_file)
    await manager.wait_idle()

    assert manager.get_session(secrets_file) is not None
    assert len(crypto.decrypt_calls) == 2


# ---------------------------------------------------------------------------
# Focus following
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_focusing_another_secret_moves_the_view(
    manager, editor, settings, secrets_file, other_secrets_file
) -> None:
    editor.user_open(secrets_file)
    await manager.wait_idle()
    first_preview = manager.get_session(secrets_file).ephemeral_path

    editor.user_open(other_secrets_file)
    await manager.wait_idle()

    assert manager.get_session(secrets_file) is None
    session = manager.get_session(other_secrets_file)
    assert session is not None
    assert not Path(first_preview).exists()
    assert ephemeral_files(settings.temp_dir) == [Path(session.ephemeral_path)]
    assert editor.focus_calls[-1][0] == other_secrets_file


@pytest.mark.asyncio
async def test_focusing_unrelated_file_closes_views(
    manager, editor, settings, secrets_file, plain_file
) -> None:
    editor.user_open(secrets_file)
    await manager.wait_idle()

    editor.user_open(plain_file)
    await manager.wait_idle()

    assert len(manager.registry) == 0
    assert ephemeral_files(settings.temp_dir) == []


@pytest.mark.asyncio
async def test_focus_is_ignored_without_show_decrypted(manager, context, editor, crypto, secrets_file) -> None:
    context.update_settings(replace(context.settings, open_behavior="showEncrypted"))

    editor.user_open(secrets_file)
    await manager.wait_idle()

    assert crypto.decrypt_calls == []
    assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_switch_to_file_with_dirty_edit_copy_can_be_cancelled(
    manager, editor, secrets_file, other_secrets_file
) -> None:
    session = await manager.open_edit_in_place(secrets_file)
    editor.user_edit(session.ephemeral_path, "password: draft\n")
    editor.confirm_answers = ["Cancel"]

    result = await manager.switch_to_file(other_secrets_file)

    assert result is None
    assert manager.get_session(secrets_file) is session
    assert editor.prompts[-1][0] == UNSAVED_CHANGES_PROMPT
    assert editor.is_open(session.ephemeral_path)


@pytest.mark.asyncio
async def test_switch_to_file_saves_dirty_copy_before_switching(
    manager, editor, crypto, secrets_file, other_secrets_file
) -> None:
    session = await manager.open_edit_in_place(secrets_file)
    editor.user_edit(session.ephemeral_path, "password: draft\n")
    editor.confirm_answers = ["Save"]

    result = await manager.switch_to_file(other_secrets_file)
    await manager.wait_idle()

    assert result is not None
    assert result.source_path == other_secrets_file
    assert ("password: draft\n", secrets_file) in crypto.encrypt_calls
    assert Path(secrets_file).read_text(encoding="utf-8") == encrypted_text("password: draft\n")
    assert not Path(session.ephemeral_path).exists()


# ---------------------------------------------------------------------------
# Auto-decrypt and failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_auto_decrypt_replaces_buffer_and_marks_decrypted(
    manager, context, editor, bus, secrets_file
) -> None:
    changes: list[EncryptionStateChanged] = []
    bus.subscribe(EncryptionStateChanged, changes.append)
    context.update_settings(replace(context.settings, open_behavior="autoDecrypt"))

    editor.user_open(secrets_file)
    await manager.wait_idle()

    assert editor.get_text(secrets_file) == "plain: secrets.yaml\n"
    assert manager.encryption_state(secrets_file) is EncryptionState.DECRYPTED
    assert changes == [EncryptionStateChanged(secrets_file, decrypted=True)]
    assert len(manager.registry) == 0

    editor.user_close(secrets_file)
    await manager.wait_idle()
    assert changes[-1] == EncryptionStateChanged(secrets_file, decrypted=False)


@pytest.mark.asyncio
async def test_auto_decrypt_failure_posts_warning(manager, context, editor, crypto, notices, secrets_file) -> None:
    context.update_settings(replace(context.settings, open_behavior="autoDecrypt"))
    crypto.failures["decrypt"] = SopsError(SopsErrorKind.DECRYPTION_FAILED, "Decryption failed")

    editor.user_open(secrets_file)
    await manager.wait_idle()

    assert notices[-1].level == "warning"
    assert notices[-1].message.startswith("Auto-decrypt failed: Decryption failed.")
    assert manager.encryption_state(secrets_file) is EncryptionState.ENCRYPTED


@pytest.mark.asyncio
async def test_editor_open_failure_discards_temp_file(manager, editor, settings, notices, secrets_file) -> None:
    editor.open_error = RuntimeError("editor refused")

    session = await manager.open_preview(secrets_file)

    assert session is None
    assert len(manager.registry) == 0
    assert ephemeral_files(settings.temp_dir) == []
    assert notices[-1].level == "error"


@pytest.mark.asyncio
async def test_cancelled_open_leaves_nothing_behind(manager, editor, settings, secrets_file) -> None:
    editor.open_gate = asyncio.Event()
    task = asyncio.create_task(manager.open_preview(secrets_file))
    while not editor.open_calls:
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(manager.registry) == 0
    assert ephemeral_files(settings.temp_dir) == []


@pytest.mark.asyncio
async def test_switch_to_edit_mode_rejects_unknown_path(manager, tmp_path) -> None:
    with pytest.raises(NoOriginatingSourceError):
        await manager.switch_to_edit_mode(str(tmp_path / "stray.sops-preview-1.yaml"))


@pytest.mark.asyncio
async def test_edit_in_place_posts_info_notice(manager, notices, bus, secrets_file) -> None:
    opened: list[SessionOpened] = []
    bus.subscribe(SessionOpened, opened.append)

    session = await manager.open_edit_in_place(secrets_file, ShowDecryptedOptions())

    assert opened == [SessionOpened(secrets_file, session.ephemeral_path, "editInPlace")]
    assert notices[-1] == NoticePosted(message="Editing decrypted copy. Save to encrypt back to secrets.yaml")


def test_file_status_reports_membership(manager, secrets_file, plain_file) -> None:
    status = manager.file_status(secrets_file)
    assert status.has_matching_rule is True
    assert status.state is EncryptionState.ENCRYPTED
    assert status.is_managed is False

    other = manager.file_status(plain_file)
    assert other.has_matching_rule is False
    assert other.state is EncryptionState.UNKNOWN


def test_is_managed_file_ignores_naming_conventions(manager, tmp_path) -> None:
    lookalike = tmp_path / "secrets.sops-preview-123.yaml"
    lookalike.write_text("x", encoding="utf-8")

    assert manager.is_managed_file(str(lookalike)) is False


def test_rejects_events_after_dispose_sync(manager, editor, crypto, secrets_file) -> None:
    manager.dispose_sync()

    editor.user_open(secrets_file)

    assert crypto.decrypt_calls == []
