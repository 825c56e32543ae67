"""Tests for stickyvault.core.sync module."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from stickyvault.core.sync import RemoteSyncEngine, content_hash
from stickyvault.sources.notes.markdown import render_note
from stickyvault.sources.remote.base import RemoteError
from stickyvault.utils.settings_db import SettingsDB, get_last_sync


class TestUploads:
    """Tests for the upload phase."""

    @pytest.mark.asyncio
    async def test_new_note_is_uploaded(self, engine, vault, remote):
        """A fresh local note goes up on the first pass."""
        note = await vault.create_note(title="first", content="hello")

        result = await engine.sync()

        assert result.status == "ok"
        assert result.uploaded == 1
        assert remote.uploads == [f"/notes/{note.id}.md"]
        assert remote.files[f"/notes/{note.id}.md"][0] == render_note(note).encode("utf-8")
        assert "/notes" in remote.folders
        assert engine.status == "idle"

    @pytest.mark.asyncio
    async def test_unchanged_note_is_not_uploaded_again(self, engine, vault, remote):
        """A matching content hash skips the upload."""
        await vault.create_note(title="first")
        await engine.sync()

        result = await engine.sync()

        assert result.uploaded == 0
        assert result.downloaded == 0
        assert result.skipped == 1
        assert len(remote.uploads) == 1

    @pytest.mark.asyncio
    async def test_single_field_change_uploads_once(self, engine, vault, remote):
        """Editing one field causes exactly one more upload."""
        note = await vault.create_note(title="first")
        await engine.sync()
        await vault.update_note(note.id, color="#FFB3BA")

        second = await engine.sync()
        third = await engine.sync()

        assert second.uploaded == 1
        assert third.uploaded == 0
        assert len(remote.uploads) == 2
        assert b"color: #FFB3BA" in remote.files[engine.remote_path(note.id)][0]

    @pytest.mark.asyncio
    async def test_upload_records_hash(self, engine, vault, state_db):
        """After an upload the stored hash matches the note."""
        note = await vault.create_note(title="first")

        await engine.sync()

        assert await state_db.get_hash(note.id) == content_hash(note)

    @pytest.mark.asyncio
    async def test_upload_failure_is_counted(self, engine, vault, remote):
        """One failing note does not stop the others."""
        bad = await vault.create_note(title="bad")
        await vault.create_note(title="good")
        remote.fail_uploads.add(engine.remote_path(bad.id))

        result = await engine.sync()

        assert result.uploaded == 1
        assert len(result.errors) == 1
        assert result.status == "partial"
        assert engine.status == "error"


class TestDownloads:
    """Tests for the download phase."""

    @pytest.mark.asyncio
    async def test_remote_only_note_is_downloaded(self, engine, vault, remote, make_note):
        """A note that only exists remotely is created locally."""
        remote.put_note(make_note("r1", "from the other laptop"))

        result = await engine.sync()

        assert result.downloaded == 1
        assert result.uploaded == 0
        assert vault.get_note("r1").content == "from the other laptop"

    @pytest.mark.asyncio
    async def test_remote_newer_beyond_tolerance_wins(self, engine, vault, remote):
        """A remote copy newer by more than the tolerance replaces the local note."""
        note = await vault.create_note(title="shared", content="local")
        await engine.sync()
        newer = replace(note, content="remote", updated=note.updated + timedelta(seconds=60))
        remote.put_note(newer)

        result = await engine.sync()
        again = await engine.sync()

        assert result.downloaded == 1
        assert result.uploaded == 0
        assert vault.get_note(note.id).content == "remote"
        assert again.downloaded == 0
        assert again.uploaded == 0

    @pytest.mark.asyncio
    async def test_within_tolerance_nothing_moves(self, engine, vault, remote):
        """Copies within the tolerance window of an untracked note are left alone."""
        note = await vault.create_note(title="shared", content="local")
        remote.put_note(replace(note, content="remote"), modified=note.updated + timedelta(seconds=1))

        result = await engine.sync()

        assert result.downloaded == 0
        assert result.uploaded == 0
        assert vault.get_note(note.id).content == "local"

    @pytest.mark.asyncio
    async def test_remote_conflict_copy_is_reported(self, engine, remote, long_ago):
        """Conflict-marked remote files are listed, never downloaded."""
        name = "id1 (Bob's conflicted copy 2024-01-01).md"
        remote.put(f"/notes/{name}", "x", long_ago)

        result = await engine.sync()

        assert result.conflicts == [name]
        assert remote.downloads == []

    @pytest.mark.asyncio
    async def test_non_note_remote_file_is_ignored(self, engine, remote, long_ago):
        """Files that are not note files are left out of the pass."""
        remote.put("/notes/readme.txt", "hi", long_ago)

        result = await engine.sync()

        assert result.downloaded == 0
        assert result.errors == []


class TestDeletions:
    """Tests for deletion handling in both directions."""

    @pytest.mark.asyncio
    async def test_local_delete_reaches_remote(self, engine, vault, remote):
        """A tombstoned note is deleted remotely and not downloaded back."""
        note = await vault.create_note(title="doomed")
        await engine.sync()
        await vault.delete_note(note.id)

        result = await engine.sync()

        assert result.deleted_remote == 1
        assert result.downloaded == 0
        assert engine.remote_path(note.id) not in remote.files
        assert vault.get_note(note.id) is None

    @pytest.mark.asyncio
    async def test_old_note_missing_remotely_is_removed(
        self, engine, vault, remote, make_note, long_ago
    ):
        """A note past the grace window that vanished remotely is deleted locally."""
        remote.folders.add("/notes")
        old = make_note("old1", created=long_ago, updated=long_ago)
        await vault.apply_remote_note("old1", render_note(old))
        fresh = await vault.create_note(title="fresh")

        result = await engine.sync()

        assert result.deleted_local == 1
        assert vault.get_note("old1") is None
        assert "old1" not in vault.deleted_note_ids()
        assert result.uploaded == 1
        assert engine.remote_path(fresh.id) in remote.files

    @pytest.mark.asyncio
    async def test_removed_remote_folder_keeps_local_notes(
        self, engine, vault, remote, make_note, long_ago
    ):
        """A folder deleted on another device is recreated and refilled, not mirrored locally."""
        old = make_note("old1", created=long_ago, updated=long_ago)
        remote.put_note(old, modified=long_ago)
        first = await engine.sync()
        assert first.downloaded == 1
        remote.drop_folder("/notes")

        result = await engine.sync()

        assert result.status == "ok"
        assert result.deleted_local == 0
        assert vault.get_note("old1") is not None
        assert "/notes" in remote.folders
        assert result.uploaded == 1
        assert engine.remote_path("old1") in remote.files

    @pytest.mark.asyncio
    async def test_missing_folder_listing_skips_deletions(
        self, engine, vault, remote, make_note, long_ago
    ):
        """If the folder is still missing when listed, no local note is removed."""
        old = make_note("old1", created=long_ago, updated=long_ago)
        await vault.apply_remote_note("old1", render_note(old))

        async def create_fails(path):
            raise RemoteError("create_folder failed", status=503)

        remote.create_folder = create_fails

        result = await engine.sync()

        assert result.deleted_local == 0
        assert vault.get_note("old1") is not None
        assert result.uploaded == 1

    @pytest.mark.asyncio
    async def test_delete_remote_note_missing_counts_as_success(self, engine):
        """Deleting a note that is already gone remotely is fine."""
        assert await engine.delete_remote_note("never-uploaded") is True


class TestFailures:
    """Tests for auth, network and concurrency edge cases."""

    @pytest.mark.asyncio
    async def test_refresh_failure_aborts_pass(self, engine, vault, remote, credentials):
        """Unusable credentials end the pass as not-authenticated."""
        await vault.create_note(title="x")
        credentials.refresh_ok = False
        remote.auth_failures = 10

        result = await engine.sync()

        assert result.status == "not-authenticated"
        assert result.aborted
        assert credentials.refresh_calls == 1
        assert engine.status == "not-connected"
        assert remote.uploads == []

    @pytest.mark.asyncio
    async def test_refresh_success_continues(self, engine, vault, remote, credentials):
        """One refresh recovers an expired token and the pass completes."""
        await vault.create_note(title="x")
        remote.auth_failures = 1

        result = await engine.sync()

        assert credentials.refresh_calls == 1
        assert result.status == "ok"
        assert result.uploaded == 1

    @pytest.mark.asyncio
    async def test_listing_failure_is_offline(self, engine, remote):
        """A network error while listing marks the engine offline."""

        async def unreachable(path):
            raise RemoteError("connection refused")

        remote.list_folder = unreachable

        result = await engine.sync()

        assert result.status == "offline"
        assert engine.status == "offline"

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_busy(self, engine, vault, remote):
        """A second trigger during a pass returns busy immediately."""
        await vault.create_note(title="x")
        remote.list_gate = asyncio.Event()

        first = asyncio.create_task(engine.sync())
        while not engine.is_syncing:
            await asyncio.sleep(0)
        second = await engine.sync()
        remote.list_gate.set()
        first_result = await first

        assert second.status == "busy"
        assert first_result.uploaded == 1

    @pytest.mark.asyncio
    async def test_status_listener_sees_transitions(self, engine, vault):
        """Status changes are published to subscribers."""
        seen = []
        engine.on_status_change(seen.append)
        await vault.create_note(title="x")

        await engine.sync()

        assert seen == ["syncing", "idle"]


class TestBulkAndSingle:
    """Tests for operations outside the full pass."""

    @pytest.mark.asyncio
    async def test_sync_all_notes(self, engine, vault):
        """Every note is pushed once; a second push skips them all."""
        await vault.create_note(title="a")
        await vault.create_note(title="b")

        first = await engine.sync_all_notes()
        second = await engine.sync_all_notes()

        assert (first.uploaded, first.skipped, first.errors) == (2, 0, 0)
        assert (second.uploaded, second.skipped, second.errors) == (0, 2, 0)

    @pytest.mark.asyncio
    async def test_upload_note_not_authenticated(self, engine, vault, remote, credentials):
        """upload_note reports False when credentials cannot be refreshed."""
        note = await vault.create_note(title="a")
        credentials.refresh_ok = False
        remote.auth_failures = 10

        assert await engine.upload_note(note) is False
        assert engine.status == "not-connected"

    @pytest.mark.asyncio
    async def test_test_connection(self, engine):
        """test_connection returns the account name."""
        assert await engine.test_connection() == (True, "Test User")

    @pytest.mark.asyncio
    async def test_last_sync_is_recorded(self, vault, remote, state_db, sync_config, tmp_path):
        """With a settings store the pass summary is remembered."""
        settings = SettingsDB(tmp_path / "settings.db")
        engine = RemoteSyncEngine(vault, remote, state_db, sync_config, settings=settings)
        await vault.create_note(title="a")

        await engine.sync()

        summary = get_last_sync(settings)
        assert summary["status"] == "ok"
        assert summary["uploaded"] == 1
