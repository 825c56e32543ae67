"""The local vault: note files on disk, their in-memory cache and the index.

The vault is the only writer of note files and of index.json. Everything else
(the CLI, the sync engine, the file watcher) goes through its methods, and it
tells subscribers about every change via an EventBus.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from enum import Enum
from pathlib import Path

import aiofiles
import aiofiles.os

from stickyvault.core.models import (
    ConflictDetected,
    ConflictInfo,
    IndexEntry,
    Note,
    NoteCreated,
    NoteDeleted,
    NoteUpdated,
    VaultEvent,
    VaultIndex,
)
from stickyvault.sources.notes import conflicts as conflict_store
from stickyvault.sources.notes import index as index_store
from stickyvault.sources.notes.markdown import (
    NOTE_EXTENSION,
    advance_timestamp,
    extract_note_id,
    new_note,
    normalize_note,
    note_filename,
    parse_note,
    render_note,
)
from stickyvault.sources.notes.markdown import toggle_checkbox as toggle_checkbox_line
from stickyvault.utils.events import EventBus
from stickyvault.utils.watcher import StableFileWatcher

logger = logging.getLogger(__name__)

# Fields a caller may change on an existing note.
_MUTABLE_FIELDS = {"title", "content", "color", "pinned", "tags", "reminders", "encrypted"}


class VaultState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DESTROYED = "destroyed"


class VaultError(Exception):
    """The vault could not be brought up (e.g. the notes directory is not writable)."""


class LocalVault:
    """Owns the note cache, the note files, the index and the watch loop.

    CRUD methods never raise for recoverable problems such as an unknown id;
    they return None or False instead. Only ``initialize()`` raises, with
    VaultError, when the vault cannot be used at all.
    """

    def __init__(self, vault_path: Path, watch_files: bool = True, stability_ms: int = 500):
        self.vault_path = Path(vault_path)
        self.notes_dir = index_store.notes_path(self.vault_path)
        self.watch_files = watch_files
        self.stability_ms = stability_ms

        self.state = VaultState.UNINITIALIZED
        self._notes: dict[str, Note] = {}
        self._index: VaultIndex = index_store.create_empty_index()
        self._events: EventBus[VaultEvent] = EventBus()
        self._lock = asyncio.Lock()
        self._watcher: StableFileWatcher | None = None

    # Lifecycle

    async def initialize(self) -> None:
        """Load notes and the index, sweep for conflicts and start watching.

        Calling this on a ready vault does nothing.

        Raises:
            VaultError: If the notes directory cannot be created or read
        """
        if self.state == VaultState.READY:
            return
        if self.state == VaultState.DESTROYED:
            raise VaultError("Vault has been destroyed")

        self.state = VaultState.INITIALIZING
        try:
            self.notes_dir.mkdir(parents=True, exist_ok=True)
            if not self.notes_dir.is_dir():
                raise VaultError(f"{self.notes_dir} is not a directory")
            filenames = await aiofiles.os.listdir(self.notes_dir)
        except OSError as e:
            self.state = VaultState.UNINITIALIZED
            raise VaultError(f"Cannot open notes directory {self.notes_dir}: {e}") from e

        self._index = await index_store.load_index(self.vault_path)
        tombstones = set(self._index.deleted_notes)

        notes: dict[str, Note] = {}
        for filename in sorted(filenames):
            note_id = extract_note_id(filename)
            if note_id is None or note_id in tombstones:
                continue
            note = await self._read_note_file(self.notes_dir / filename)
            if note is not None:
                notes[note.id] = note
        self._notes = notes

        await self._reconcile_index()

        for filename in await conflict_store.scan_for_conflicts(self.vault_path):
            await self._handle_conflict(filename)

        if self.watch_files:
            self._watcher = StableFileWatcher(
                self.notes_dir,
                on_changed=self.handle_file_changed,
                on_removed=self.handle_file_removed,
                stability_seconds=self.stability_ms / 1000,
            )
            self._watcher.start()

        self.state = VaultState.READY
        logger.info("Vault ready at %s with %d notes", self.vault_path, len(self._notes))

    async def destroy(self) -> None:
        """Stop watching and drop listeners. Files are left untouched."""
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        self._events.clear()
        self.state = VaultState.DESTROYED

    async def _reconcile_index(self) -> None:
        """Make the index agree with the notes actually loaded."""
        index = self._index
        changed = False

        for note_id in [nid for nid in index.notes if nid not in self._notes]:
            index = index_store.remove_note(index, note_id, track_deletion=False)
            changed = True

        for note in self._notes.values():
            entry = index.notes.get(note.id)
            if entry is None or not self._entry_matches(entry, note):
                index = index_store.upsert_note(index, note)
                changed = True

        self._index = index
        if changed or not index_store.index_path(self.vault_path).exists():
            await index_store.save_index(self.vault_path, self._index)

    @staticmethod
    def _entry_matches(entry: IndexEntry, note: Note) -> bool:
        fresh = index_store.upsert_note(index_store.create_empty_index(), note).notes[note.id]
        return (entry.pinned, entry.color, entry.title, entry.updated) == (
            fresh.pinned,
            fresh.color,
            fresh.title,
            fresh.updated,
        )

    # Accessors

    def subscribe(self, listener: Callable[[VaultEvent], None]) -> Callable[[], None]:
        """Register ``listener`` for vault events; returns an unsubscribe function."""
        return self._events.subscribe(listener)

    def get_all_notes(self) -> list[Note]:
        return list(self._notes.values())

    def get_note(self, note_id: str) -> Note | None:
        return self._notes.get(note_id)

    def get_index(self) -> VaultIndex:
        return self._index

    def _from_index(self, items: list[tuple[str, IndexEntry]]) -> list[Note]:
        return [self._notes[note_id] for note_id, _ in items if note_id in self._notes]

    def sorted_notes(self) -> list[Note]:
        """Notes in display order (pinned first, then by index order)."""
        return self._from_index(index_store.sorted_notes(self._index))

    def pinned_notes(self) -> list[Note]:
        return self._from_index(index_store.pinned_notes(self._index))

    def search_notes(self, query: str) -> list[Note]:
        """Notes whose title contains ``query``, ignoring case, in display order."""
        return self._from_index(index_store.search_notes_by_title(self._index, query))

    def notes_with_tag(self, tag: str) -> list[Note]:
        tagged = set(index_store.notes_by_tag(self._index, tag, self._notes))
        return [note for note in self.sorted_notes() if note.id in tagged]

    def deleted_note_ids(self) -> list[str]:
        return list(self._index.deleted_notes)

    # File helpers

    def _note_path(self, note_id: str) -> Path:
        return self.notes_dir / note_filename(note_id)

    async def _read_note_file(self, path: Path) -> Note | None:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read note file %s: %s", path.name, e)
            return None

        note = parse_note(raw, path.name)
        if note is None:
            logger.warning("Skipping %s: no metadata block", path.name)
            return None

        file_id = extract_note_id(path.name)
        if file_id and note.id != file_id:
            logger.warning("Note %s has id %s in its metadata, using filename id", path.name, note.id)
            note = replace(note, id=file_id)
        return note

    async def _write_text(self, note_id: str, text: str) -> None:
        path = self._note_path(note_id)
        temp_path = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(text)
        await aiofiles.os.replace(temp_path, path)

    async def _store(self, note: Note, text: str | None = None) -> Note | None:
        """Write a note file, then refresh cache and index.

        Without ``text`` the note is rendered, and what gets cached is the note
        as that file parses back, so the watcher sees its own write as unchanged.
        Returns the cached note, or None on I/O failure.
        """
        if text is None:
            note = normalize_note(note)
            text = render_note(note)
        try:
            await self._write_text(note.id, text)
        except OSError as e:
            logger.error("Failed to write note %s: %s", note.id, e)
            return None
        self._notes[note.id] = note
        self._index = index_store.upsert_note(self._index, note)
        await self._save_index()
        return note

    async def _save_index(self) -> None:
        try:
            await index_store.save_index(self.vault_path, self._index)
        except OSError as e:
            logger.error("Failed to save index: %s", e)

    # Mutations

    async def create_note(self, **fields) -> Note | None:
        async with self._lock:
            note = await self._store(new_note(**fields))
            if note is None:
                return None
        logger.info("Created note %s", note.id)
        self._events.emit(NoteCreated(note=note))
        return note

    async def update_note(self, note_id: str, **fields) -> Note | None:
        """Merge ``fields`` over an existing note. ``id`` and ``created`` cannot change."""
        async with self._lock:
            existing = self._notes.get(note_id)
            if existing is None:
                logger.warning("Cannot update unknown note %s", note_id)
                return None

            changes = {key: value for key, value in fields.items() if key in _MUTABLE_FIELDS}
            ignored = set(fields) - set(changes)
            if ignored:
                logger.debug("Ignoring non-editable fields for %s: %s", note_id, sorted(ignored))
            if "tags" in changes:
                changes["tags"] = list(changes["tags"] or [])
            if "reminders" in changes:
                changes["reminders"] = list(changes["reminders"] or [])

            note = await self._store(replace(existing, **changes, updated=advance_timestamp(existing.updated)))
            if note is None:
                return None

        self._events.emit(NoteUpdated(note=note))
        return note

    async def delete_note(self, note_id: str, track_deletion: bool = True) -> bool:
        """Remove a note locally.

        Args:
            note_id: Note to delete
            track_deletion: Record a tombstone so the deletion reaches the remote

        Returns:
            False only if the note is unknown and has no file either
        """
        async with self._lock:
            known = note_id in self._notes or note_id in self._index.notes
            path = self._note_path(note_id)
            try:
                await aiofiles.os.remove(path)
                known = True
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error("Failed to delete note file %s: %s", path.name, e)
                return False

            if not known:
                logger.warning("Cannot delete unknown note %s", note_id)
                return False

            self._notes.pop(note_id, None)
            self._index = index_store.remove_note(self._index, note_id, track_deletion)
            await self._save_index()

        logger.info("Deleted note %s", note_id)
        self._events.emit(NoteDeleted(note_id=note_id))
        return True

    async def toggle_checkbox(self, note_id: str, line_index: int) -> Note | None:
        note = self._notes.get(note_id)
        if note is None:
            return None
        content = toggle_checkbox_line(note.content, line_index)
        if content == note.content:
            return note
        return await self.update_note(note_id, content=content)

    async def toggle_pinned(self, note_id: str) -> Note | None:
        note = self._notes.get(note_id)
        if note is None:
            return None
        return await self.update_note(note_id, pinned=not note.pinned)

    async def reorder(self, note_ids: list[str]) -> None:
        async with self._lock:
            self._index = index_store.reorder_notes(self._index, note_ids)
            await self._save_index()

    async def rebuild_index_from_disk(self) -> VaultIndex:
        """Re-read every note file and derive the index from scratch.

        Tombstones survive the rebuild.
        """
        async with self._lock:
            tombstones = list(self._index.deleted_notes)
            notes: dict[str, Note] = {}
            for filename in sorted(await aiofiles.os.listdir(self.notes_dir)):
                note_id = extract_note_id(filename)
                if note_id is None or note_id in tombstones:
                    continue
                note = await self._read_note_file(self.notes_dir / filename)
                if note is not None:
                    notes[note.id] = note

            # Keep the user's manual ordering where the old index still knows it.
            previous = self._index.notes
            ordered = sorted(
                notes.values(),
                key=lambda n: previous[n.id].order if n.id in previous else len(notes),
            )
            index = index_store.rebuild_index(ordered)
            index.deleted_notes = tombstones
            self._notes = notes
            self._index = index
            await self._save_index()

        logger.info("Rebuilt index from %d note files", len(self._notes))
        return self._index

    # Conflicts

    async def _handle_conflict(self, filename: str) -> ConflictInfo | None:
        info = await conflict_store.handle_conflict_file(self.vault_path, filename)
        if info is not None:
            self._events.emit(ConflictDetected(conflict=info))
        return info

    async def get_conflicts(self) -> list[ConflictInfo]:
        return await conflict_store.list_conflicts(self.vault_path)

    async def resolve_conflict(self, conflict: ConflictInfo, keep_conflict: bool) -> Note | None:
        """Resolve a conflict and reload the affected note into the cache."""
        async with self._lock:
            await conflict_store.resolve_conflict(self.vault_path, conflict, keep_conflict)
        if not keep_conflict:
            return self._notes.get(conflict.note_id)
        return await self._reload(self._note_path(conflict.note_id))

    # Remote and watcher entry points

    async def apply_remote_note(self, note_id: str, raw: str) -> Note | None:
        """Write bytes fetched from the remote store as the local copy of ``note_id``.

        Tombstoned ids are refused so a stale remote copy cannot bring a
        deleted note back.
        """
        if note_id in self._index.deleted_notes:
            logger.debug("Refusing remote copy of deleted note %s", note_id)
            return None

        note = parse_note(raw, note_filename(note_id))
        if note is None:
            logger.warning("Remote copy of %s is not a note file", note_id)
            return None
        if note.id != note_id:
            note = replace(note, id=note_id)

        async with self._lock:
            previous = self._notes.get(note_id)
            if previous == note:
                return previous
            if await self._store(note, text=raw) is None:
                return None

        self._events.emit(NoteCreated(note=note) if previous is None else NoteUpdated(note=note))
        return note

    async def _reload(self, path: Path) -> Note | None:
        note_id = extract_note_id(path.name)
        if note_id is None or note_id in self._index.deleted_notes:
            return None

        async with self._lock:
            note = await self._read_note_file(path)
            if note is None:
                return None
            previous = self._notes.get(note.id)
            if previous == note:
                return previous
            self._notes[note.id] = note
            self._index = index_store.upsert_note(self._index, note)
            await self._save_index()

        self._events.emit(NoteCreated(note=note) if previous is None else NoteUpdated(note=note))
        return note

    async def handle_file_changed(self, path: Path) -> None:
        """A file in the notes directory settled after being added or modified."""
        name = path.name
        if name == index_store.INDEX_FILENAME or not name.endswith(NOTE_EXTENSION):
            return
        try:
            if conflict_store.is_conflict_file(name):
                await self._handle_conflict(name)
            else:
                await self._reload(path)
        except Exception:
            logger.exception("Failed to process changed file %s", name)

    async def handle_file_removed(self, path: Path) -> None:
        """A note file disappeared without going through ``delete_note``."""
        note_id = extract_note_id(path.name)
        if note_id is None or note_id not in self._notes or path.exists():
            return

        async with self._lock:
            self._notes.pop(note_id, None)
            self._index = index_store.remove_note(self._index, note_id, track_deletion=True)
            await self._save_index()

        logger.info("Note file for %s was removed externally", note_id)
        self._events.emit(NoteDeleted(note_id=note_id))
