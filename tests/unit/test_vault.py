"""Tests for stickyvault.core.vault module."""

import json
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from stickyvault.core.models import ConflictDetected, Note, NoteCreated, NoteDeleted, NoteUpdated
from stickyvault.core.vault import LocalVault, VaultError, VaultState
from stickyvault.sources.notes.index import index_path
from stickyvault.sources.notes.markdown import render_note

STAMP = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


def _write(vault_path, note: Note, name: str | None = None):
    folder = vault_path / "notes"
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / (name or f"{note.id}.md")
    path.write_text(render_note(note), encoding="utf-8")
    return path


def _note(note_id: str, content: str = "body", **fields) -> Note:
    return Note(id=note_id, title=fields.pop("title", note_id), content=content,
                created=STAMP, updated=STAMP, **fields)


def _record(vault):
    events = []
    vault.subscribe(events.append)
    return events


class TestLifecycle:
    """Tests for initialize/destroy."""

    @pytest.mark.asyncio
    async def test_initialize_creates_layout(self, vault_path):
        """An empty path becomes a vault with notes/ and index.json."""
        vault = LocalVault(vault_path, watch_files=False)

        await vault.initialize()

        assert vault.state == VaultState.READY
        assert (vault_path / "notes").is_dir()
        assert index_path(vault_path).exists()
        await vault.destroy()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, vault):
        """A second initialize on a ready vault changes nothing."""
        note = await vault.create_note(title="x")

        await vault.initialize()

        assert vault.get_note(note.id) == note

    @pytest.mark.asyncio
    async def test_initialize_fails_when_path_is_a_file(self, tmp_path):
        """An unusable notes directory raises VaultError."""
        blocker = tmp_path / "vault"
        blocker.write_text("not a directory")
        vault = LocalVault(blocker, watch_files=False)

        with pytest.raises(VaultError):
            await vault.initialize()

        assert vault.state == VaultState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_destroyed_vault_cannot_reinitialize(self, vault):
        """destroy is terminal."""
        await vault.destroy()

        with pytest.raises(VaultError):
            await vault.initialize()

    @pytest.mark.asyncio
    async def test_loads_existing_notes_and_skips_others(self, vault_path):
        """Note files load; malformed files and the index are skipped."""
        _write(vault_path, _note("a"))
        (vault_path / "notes" / "broken.md").write_text("no metadata here")
        (vault_path / "notes" / "readme.txt").write_text("ignore me")
        vault = LocalVault(vault_path, watch_files=False)

        await vault.initialize()

        assert [n.id for n in vault.get_all_notes()] == ["a"]
        assert set(vault.get_index().notes) == {"a"}
        await vault.destroy()

    @pytest.mark.asyncio
    async def test_filename_id_wins_over_metadata(self, vault_path):
        """A file whose metadata id disagrees is keyed by its filename."""
        _write(vault_path, _note("other"), name="real.md")
        vault = LocalVault(vault_path, watch_files=False)

        await vault.initialize()

        assert vault.get_note("real") is not None
        assert vault.get_note("other") is None
        await vault.destroy()

    @pytest.mark.asyncio
    async def test_tombstoned_file_is_not_loaded(self, vault_path):
        """A note listed as deleted stays deleted even if its file reappears."""
        _write(vault_path, _note("ghost"))
        index_path(vault_path).write_text(json.dumps({"version": 1, "notes": {}, "deletedNotes": ["ghost"]}))
        vault = LocalVault(vault_path, watch_files=False)

        await vault.initialize()

        assert vault.get_note("ghost") is None
        assert vault.deleted_note_ids() == ["ghost"]
        await vault.destroy()

    @pytest.mark.asyncio
    async def test_stale_index_entries_are_dropped(self, vault_path):
        """Index entries without a file are removed without a tombstone."""
        _write(vault_path, _note("a"))
        index_path(vault_path).write_text(json.dumps({
            "version": 1,
            "notes": {"missing": {"order": 0, "pinned": False, "color": "", "title": "", "updated": ""}},
        }))
        vault = LocalVault(vault_path, watch_files=False)

        await vault.initialize()

        assert set(vault.get_index().notes) == {"a"}
        assert vault.deleted_note_ids() == []
        await vault.destroy()

    @pytest.mark.asyncio
    async def test_initial_sweep_moves_conflicts(self, vault_path):
        """Conflict copies present at startup are moved aside and recorded."""
        _write(vault_path, _note("id1"))
        _write(vault_path, _note("id1", "theirs"), name="id1 (Bob's conflicted copy 2024-01-01).md")
        vault = LocalVault(vault_path, watch_files=False)

        await vault.initialize()

        recorded = await vault.get_conflicts()
        assert [c.note_id for c in recorded] == ["id1"]
        assert [n.id for n in vault.get_all_notes()] == ["id1"]
        await vault.destroy()


class TestCrud:
    """Tests for note mutations."""

    @pytest.mark.asyncio
    async def test_create_writes_file_and_emits(self, vault, vault_path):
        """create_note writes a file, indexes it and emits note-created."""
        events = _record(vault)

        note = await vault.create_note(title="Groceries", content="- [ ] milk", tags=["home"])

        assert (vault_path / "notes" / f"{note.id}.md").exists()
        assert vault.get_index().notes[note.id].title == "Groceries"
        assert vault.get_index().tags == ["home"]
        assert events == [NoteCreated(note=note)]

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, vault):
        """update_note changes given fields and advances updated."""
        note = await vault.create_note(title="Old", content="keep")
        events = _record(vault)

        updated = await vault.update_note(note.id, title="New", color="#A8E6CF")

        assert updated.title == "New"
        assert updated.content == "keep"
        assert updated.color == "#A8E6CF"
        assert updated.updated > note.updated
        assert events == [NoteUpdated(note=updated)]

    @pytest.mark.asyncio
    async def test_update_cannot_change_identity(self, vault):
        """id and created are immutable through update_note."""
        note = await vault.create_note(title="x")

        updated = await vault.update_note(note.id, id="hijack", created=STAMP, title="y")

        assert updated.id == note.id
        assert updated.created == note.created
        assert vault.get_note("hijack") is None

    @pytest.mark.asyncio
    async def test_update_unknown_returns_none(self, vault):
        """Unknown ids are reported with None, not an exception."""
        assert await vault.update_note("nope", title="x") is None

    @pytest.mark.asyncio
    async def test_delete_removes_and_tombstones(self, vault, vault_path):
        """delete_note removes the file and records a tombstone."""
        note = await vault.create_note(title="bye")
        events = _record(vault)

        assert await vault.delete_note(note.id) is True

        assert not (vault_path / "notes" / f"{note.id}.md").exists()
        assert vault.get_note(note.id) is None
        assert note.id in vault.deleted_note_ids()
        assert events == [NoteDeleted(note_id=note.id)]

    @pytest.mark.asyncio
    async def test_delete_with_missing_file_still_succeeds(self, vault, vault_path):
        """A note whose file is already gone is treated as deleted."""
        note = await vault.create_note(title="bye")
        (vault_path / "notes" / f"{note.id}.md").unlink()

        assert await vault.delete_note(note.id) is True
        assert vault.get_note(note.id) is None

    @pytest.mark.asyncio
    async def test_delete_unknown_returns_false(self, vault):
        """An id the vault never knew is not tombstoned."""
        assert await vault.delete_note("nope") is False
        assert vault.deleted_note_ids() == []

    @pytest.mark.asyncio
    async def test_delete_without_tracking(self, vault):
        """track_deletion=False leaves no tombstone."""
        note = await vault.create_note(title="x")

        await vault.delete_note(note.id, track_deletion=False)

        assert vault.deleted_note_ids() == []

    @pytest.mark.asyncio
    async def test_toggle_checkbox(self, vault):
        """A checkbox line flips; out-of-range lines return the note unchanged."""
        note = await vault.create_note(content="- [ ] milk\n- [ ] eggs")

        toggled = await vault.toggle_checkbox(note.id, 1)
        unchanged = await vault.toggle_checkbox(note.id, 9)

        assert toggled.content == "- [ ] milk\n- [x] eggs"
        assert unchanged is toggled
        assert await vault.toggle_checkbox("nope", 0) is None

    @pytest.mark.asyncio
    async def test_pin_changes_sort_order(self, vault):
        """Pinning the second note moves it first."""
        a = await vault.create_note(title="a")
        b = await vault.create_note(title="b")

        await vault.toggle_pinned(b.id)

        assert [n.id for n in vault.sorted_notes()] == [b.id, a.id]

    @pytest.mark.asyncio
    async def test_pinned_search_and_tag_queries(self, vault):
        """Queries return notes in display order."""
        a = await vault.create_note(title="Groceries", tags=["home"])
        b = await vault.create_note(title="Work plan", tags=["work"], pinned=True)
        c = await vault.create_note(title="More groceries", tags=["home"])

        assert [n.id for n in vault.pinned_notes()] == [b.id]
        assert [n.id for n in vault.search_notes("GROCER")] == [a.id, c.id]
        assert [n.id for n in vault.notes_with_tag("home")] == [a.id, c.id]
        assert vault.notes_with_tag("nope") == []

    @pytest.mark.asyncio
    async def test_reorder(self, vault):
        """reorder applies the given manual order."""
        a = await vault.create_note(title="a")
        b = await vault.create_note(title="b")

        await vault.reorder([b.id, a.id])

        assert [n.id for n in vault.sorted_notes()] == [b.id, a.id]

    @pytest.mark.asyncio
    async def test_rebuild_index_keeps_order_and_tombstones(self, vault, vault_path):
        """Rebuilding keeps known order, adds new files and preserves tombstones."""
        a = await vault.create_note(title="a")
        b = await vault.create_note(title="b")
        gone = await vault.create_note(title="gone")
        await vault.delete_note(gone.id)
        await vault.reorder([b.id, a.id])
        _write(vault_path, _note("fresh"))

        index = await vault.rebuild_index_from_disk()

        assert gone.id in index.deleted_notes
        assert [n.id for n in vault.sorted_notes()] == [b.id, a.id, "fresh"]
        assert [e.order for _, e in sorted(index.notes.items(), key=lambda i: i[1].order)] == [0, 1, 2]


class TestExternalChanges:
    """Tests for the watcher and remote entry points."""

    @pytest.mark.asyncio
    async def test_new_file_is_loaded(self, vault, vault_path):
        """A file written by someone else is picked up and announced."""
        events = _record(vault)
        path = _write(vault_path, _note("ext"))

        await vault.handle_file_changed(path)

        assert vault.get_note("ext") is not None
        assert [type(e) for e in events] == [NoteCreated]

    @pytest.mark.asyncio
    async def test_own_write_is_not_reannounced(self, vault, vault_path):
        """Re-reading a file the vault just wrote emits nothing."""
        note = await vault.create_note(title="mine")
        events = _record(vault)

        await vault.handle_file_changed(vault_path / "notes" / f"{note.id}.md")

        assert events == []

    @pytest.mark.asyncio
    async def test_untrimmed_fields_do_not_echo(self, vault, vault_path):
        """Padded titles and trailing newlines are cached as the file reads back."""
        note = await vault.create_note(title="  Groceries", content="- [ ] milk\n")
        updated = await vault.update_note(note.id, title="Line one\nline two", content="\n\nx\n")
        events = _record(vault)

        await vault.handle_file_changed(vault_path / "notes" / f"{note.id}.md")

        assert events == []
        assert note.title == "Groceries"
        assert note.content == "- [ ] milk"
        assert updated.content == "x"
        assert "\n" not in updated.title
        assert vault.get_note(note.id) == updated

    @pytest.mark.asyncio
    async def test_external_edit_emits_update(self, vault, vault_path):
        """A changed file updates the cache."""
        note = await vault.create_note(title="mine")
        events = _record(vault)
        path = _write(vault_path, replace(note, content="edited elsewhere"))

        await vault.handle_file_changed(path)

        assert vault.get_note(note.id).content == "edited elsewhere"
        assert [type(e) for e in events] == [NoteUpdated]

    @pytest.mark.asyncio
    async def test_malformed_file_is_ignored(self, vault, vault_path):
        """A file without metadata does not disturb the vault."""
        path = vault_path / "notes" / "junk.md"
        path.write_text("nothing to see")

        await vault.handle_file_changed(path)

        assert vault.get_note("junk") is None

    @pytest.mark.asyncio
    async def test_conflict_file_is_moved(self, vault, vault_path):
        """A conflict copy appearing at runtime is moved and announced."""
        note = await vault.create_note(title="mine")
        events = _record(vault)
        path = _write(vault_path, note, name=f"{note.id} (Ann's conflicted copy 2024-06-01).md")

        await vault.handle_file_changed(path)

        assert not path.exists()
        assert [type(e) for e in events] == [ConflictDetected]

    @pytest.mark.asyncio
    async def test_removed_file_tombstones_note(self, vault, vault_path):
        """A note file deleted outside the vault is tracked as deleted."""
        note = await vault.create_note(title="mine")
        events = _record(vault)
        path = vault_path / "notes" / f"{note.id}.md"
        path.unlink()

        await vault.handle_file_removed(path)

        assert vault.get_note(note.id) is None
        assert note.id in vault.deleted_note_ids()
        assert events == [NoteDeleted(note_id=note.id)]

    @pytest.mark.asyncio
    async def test_apply_remote_note(self, vault):
        """Remote bytes become the local note and are announced once."""
        events = _record(vault)
        raw = render_note(_note("remote1", "from afar"))

        first = await vault.apply_remote_note("remote1", raw)
        second = await vault.apply_remote_note("remote1", raw)

        assert first.content == "from afar"
        assert second == first
        assert [type(e) for e in events] == [NoteCreated]

    @pytest.mark.asyncio
    async def test_apply_remote_note_refuses_tombstone(self, vault):
        """A deleted note cannot come back from the remote."""
        note = await vault.create_note(title="x")
        await vault.delete_note(note.id)

        assert await vault.apply_remote_note(note.id, render_note(note)) is None
        assert vault.get_note(note.id) is None

    @pytest.mark.asyncio
    async def test_resolve_conflict_keep_copy_reloads(self, vault, vault_path):
        """Keeping the conflict copy refreshes the cached note."""
        note = await vault.create_note(title="mine", content="mine")
        path = _write(
            vault_path,
            replace(note, content="theirs"),
            name=f"{note.id} (Ann's conflicted copy 2024-06-01).md",
        )
        await vault.handle_file_changed(path)
        [conflict] = await vault.get_conflicts()

        resolved = await vault.resolve_conflict(conflict, keep_conflict=True)

        assert resolved.content == "theirs"
        assert vault.get_note(note.id).content == "theirs"
        assert await vault.get_conflicts() == []
