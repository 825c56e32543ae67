"""Index store: the index.json sidecar used to list notes without parsing bodies.

The index is a cache. ``rebuild_index`` can always derive it again from the
note files. Mutating helpers return a new VaultIndex and leave their input
untouched.
"""

import json
import logging
from copy import deepcopy
from pathlib import Path

import aiofiles
import aiofiles.os

from stickyvault.core.models import IndexEntry, Note, VaultIndex
from stickyvault.sources.notes.markdown import format_timestamp, utc_now

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
INDEX_FILENAME = "index.json"
NOTES_DIRNAME = "notes"

# Offset that keeps pinned notes ahead of everything else during a rebuild.
_PINNED_ORDER_BASE = -1000


def notes_path(vault_path: Path) -> Path:
    return Path(vault_path) / NOTES_DIRNAME


def index_path(vault_path: Path) -> Path:
    return notes_path(vault_path) / INDEX_FILENAME


def create_empty_index() -> VaultIndex:
    return VaultIndex(
        version=INDEX_VERSION,
        last_sync=format_timestamp(utc_now()),
        notes={},
        deleted_notes=[],
        tags=[],
    )


def _entry_from_dict(data: dict) -> IndexEntry:
    try:
        order = int(data.get("order", 0))
    except (TypeError, ValueError):
        order = 0
    return IndexEntry(
        order=order,
        pinned=bool(data.get("pinned", False)),
        color=str(data.get("color", "")),
        title=str(data.get("title", "")),
        updated=str(data.get("updated", "")),
    )


def index_from_dict(data: dict) -> VaultIndex:
    """Build a VaultIndex from its JSON form, filling in defaults for missing keys."""
    defaults = create_empty_index()

    notes = {}
    raw_notes = data.get("notes")
    if isinstance(raw_notes, dict):
        for note_id, entry in raw_notes.items():
            if isinstance(entry, dict):
                notes[str(note_id)] = _entry_from_dict(entry)

    deleted: list[str] = []
    raw_deleted = data.get("deletedNotes")
    if isinstance(raw_deleted, list):
        for note_id in raw_deleted:
            if str(note_id) not in deleted:
                deleted.append(str(note_id))

    raw_tags = data.get("tags")
    tags = sorted({str(tag) for tag in raw_tags}) if isinstance(raw_tags, list) else []

    return VaultIndex(
        version=data.get("version", defaults.version),
        last_sync=str(data.get("lastSync") or defaults.last_sync),
        notes=notes,
        deleted_notes=deleted,
        tags=tags,
    )


def _migrate_index(data: dict) -> VaultIndex:
    logger.info("Migrating index from version %s to %s", data.get("version"), INDEX_VERSION)
    index = index_from_dict(data)
    index.version = INDEX_VERSION
    return index


async def load_index(vault_path: Path) -> VaultIndex:
    """Load the vault index, creating an empty one if none exists.

    A corrupt index file is logged and replaced by an empty index; the caller
    is expected to reconcile it against the note files.
    """
    path = index_path(vault_path)
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError:
        logger.debug("No index at %s, starting fresh", path)
        return create_empty_index()

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Index file %s is corrupt (%s), starting fresh", path, e)
        return create_empty_index()

    if not isinstance(data, dict):
        logger.warning("Index file %s has unexpected structure, starting fresh", path)
        return create_empty_index()

    if data.get("version") != INDEX_VERSION:
        return _migrate_index(data)
    return index_from_dict(data)


async def save_index(vault_path: Path, index: VaultIndex) -> None:
    """Write the index atomically (temp file, then rename over the old one)."""
    folder = notes_path(vault_path)
    folder.mkdir(parents=True, exist_ok=True)

    index.last_sync = format_timestamp(utc_now())
    path = index_path(vault_path)
    temp_path = path.with_name(f".{INDEX_FILENAME}.tmp")

    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(index.to_dict(), indent=2, ensure_ascii=False))
    await aiofiles.os.replace(temp_path, path)
    logger.debug("Saved index with %d notes", len(index.notes))


def _copy(index: VaultIndex) -> VaultIndex:
    return deepcopy(index)


def upsert_note(index: VaultIndex, note: Note) -> VaultIndex:
    """Add or refresh a note's entry, keeping its order if it already has one."""
    updated = _copy(index)
    existing = updated.notes.get(note.id)
    if existing is not None:
        order = existing.order
    else:
        order = max((entry.order for entry in updated.notes.values()), default=-1) + 1

    updated.notes[note.id] = IndexEntry(
        order=order,
        pinned=note.pinned,
        color=note.color,
        title=note.title,
        updated=format_timestamp(note.updated),
    )
    updated.tags = sorted(set(updated.tags) | set(note.tags))
    return updated


def remove_note(index: VaultIndex, note_id: str, track_deletion: bool = True) -> VaultIndex:
    """Drop a note's entry and optionally record a tombstone for it."""
    updated = _copy(index)
    updated.notes.pop(note_id, None)
    if track_deletion and note_id not in updated.deleted_notes:
        updated.deleted_notes.append(note_id)
    return updated


def reorder_notes(index: VaultIndex, note_ids: list[str]) -> VaultIndex:
    """Assign orders following ``note_ids``; unknown ids are ignored."""
    updated = _copy(index)
    for order, note_id in enumerate(note_ids):
        entry = updated.notes.get(note_id)
        if entry is not None:
            entry.order = order
    return updated


def sorted_notes(index: VaultIndex) -> list[tuple[str, IndexEntry]]:
    """Pinned entries first, then ascending order."""
    return sorted(index.notes.items(), key=lambda item: (not item[1].pinned, item[1].order))


def pinned_notes(index: VaultIndex) -> list[tuple[str, IndexEntry]]:
    return [item for item in sorted_notes(index) if item[1].pinned]


def search_notes_by_title(index: VaultIndex, query: str) -> list[tuple[str, IndexEntry]]:
    needle = query.lower()
    return [item for item in sorted_notes(index) if needle in item[1].title.lower()]


def notes_by_tag(index: VaultIndex, tag: str, notes: dict[str, Note]) -> list[str]:
    return [
        note_id
        for note_id in index.notes
        if note_id in notes and tag in notes[note_id].tags
    ]



def rebuild_index(notes: list[Note]) -> VaultIndex:
    """Derive a fresh index purely from the note set.

    Pinned notes get a reserved negative order range so they sort first, then
    all orders are normalized to 0..n-1 in sorted position.
    """
    index = create_empty_index()
    tags: set[str] = set()

    for position, note in enumerate(notes):
        index.notes[note.id] = IndexEntry(
            order=_PINNED_ORDER_BASE + position if note.pinned else position,
            pinned=note.pinned,
            color=note.color,
            title=note.title,
            updated=format_timestamp(note.updated),
        )
        tags.update(note.tags)

    for position, (_, entry) in enumerate(sorted_notes(index)):
        entry.order = position

    index.tags = sorted(tags)
    return index
