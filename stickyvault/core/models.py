"""Data structures shared by the vault, the index and the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

DEFAULT_NOTE_COLOR = "#FFE066"

# Named palette; any other color string is accepted as a custom value.
NOTE_COLORS: dict[str, str] = {
    "yellow": "#FFE066",
    "green": "#A8E6CF",
    "blue": "#88D8F5",
    "pink": "#FFB3BA",
    "purple": "#E0BBE4",
    "peach": "#FFDAC1",
    "gray": "#C4C4C4",
}


@dataclass
class Reminder:
    """A reminder attached to a note."""

    id: str
    time: str
    message: str | None = None
    acknowledged: bool = False

    def to_dict(self) -> dict:
        data: dict = {"id": self.id, "time": self.time}
        if self.message is not None:
            data["message"] = self.message
        data["acknowledged"] = self.acknowledged
        return data


@dataclass
class Note:
    """A single note as stored in one file on disk."""

    id: str
    title: str
    content: str
    created: datetime
    updated: datetime
    color: str = DEFAULT_NOTE_COLOR
    pinned: bool = False
    tags: list[str] = field(default_factory=list)
    reminders: list[Reminder] = field(default_factory=list)
    encrypted: bool = False


@dataclass
class CheckboxItem:
    line_index: int
    text: str
    checked: bool
    original_line: str


@dataclass
class IndexEntry:
    """Per-note projection kept in index.json."""

    order: int
    pinned: bool
    color: str
    title: str
    updated: str

    def to_dict(self) -> dict:
        return {
            "order": self.order,
            "pinned": self.pinned,
            "color": self.color,
            "title": self.title,
            "updated": self.updated,
        }


@dataclass
class VaultIndex:
    version: int
    last_sync: str
    notes: dict[str, IndexEntry] = field(default_factory=dict)
    deleted_notes: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "lastSync": self.last_sync,
            "notes": {note_id: entry.to_dict() for note_id, entry in self.notes.items()},
            "deletedNotes": list(self.deleted_notes),
            "tags": list(self.tags),
        }


@dataclass
class ConflictInfo:
    """A divergent copy moved out of the live note set."""

    note_id: str
    conflict_path: str
    detected_at: str
    original_mod_time: str
    conflict_mod_time: str

    def to_dict(self) -> dict:
        return {
            "noteId": self.note_id,
            "conflictPath": self.conflict_path,
            "detectedAt": self.detected_at,
            "originalModTime": self.original_mod_time,
            "conflictModTime": self.conflict_mod_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConflictInfo:
        return cls(
            note_id=str(data["noteId"]),
            conflict_path=str(data["conflictPath"]),
            detected_at=str(data.get("detectedAt", "")),
            original_mod_time=str(data.get("originalModTime", "")),
            conflict_mod_time=str(data.get("conflictModTime", "")),
        )


# Vault events


@dataclass
class NoteCreated:
    type: ClassVar[str] = "note-created"
    note: Note


@dataclass
class NoteUpdated:
    type: ClassVar[str] = "note-updated"
    note: Note


@dataclass
class NoteDeleted:
    type: ClassVar[str] = "note-deleted"
    note_id: str


@dataclass
class ConflictDetected:
    type: ClassVar[str] = "conflict-detected"
    conflict: ConflictInfo


VaultEvent = NoteCreated | NoteUpdated | NoteDeleted | ConflictDetected


# Sync results


@dataclass
class SyncResult:
    """Outcome of one full reconciliation pass."""

    uploaded: int = 0
    downloaded: int = 0
    deleted_local: int = 0
    deleted_remote: int = 0
    skipped: int = 0
    conflicts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    status: str = "ok"

    @property
    def aborted(self) -> bool:
        return self.status in {"not-authenticated", "busy"}

    def summary(self) -> str:
        return (
            f"{self.uploaded} uploaded, {self.downloaded} downloaded, "
            f"{self.deleted_local} deleted locally, {self.deleted_remote} deleted remotely, "
            f"{self.skipped} unchanged, {len(self.errors)} errors"
        )


@dataclass
class BulkSyncResult:
    """Outcome of pushing every local note without reconciliation."""

    uploaded: int = 0
    skipped: int = 0
    errors: int = 0
