"""Detection and handling of "conflicted copy" files left by the file-sync client.

When two devices edit the same note at once, the sync client keeps both by
writing a second file such as ``<id> (Bob's conflicted copy 2025-01-01).md``.
These are moved into ``<vault>/conflicts/`` and tracked in ``conflicts.json``
until someone resolves them. The policy is last-write-wins with the losing copy
preserved, never an automatic field-level merge.
"""

import json
import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os

from stickyvault.core.models import ConflictInfo, Note, Reminder
from stickyvault.sources.notes.index import notes_path
from stickyvault.sources.notes.markdown import (
    advance_timestamp,
    format_timestamp,
    is_valid_note_id,
    note_filename,
    parse_note,
    utc_now,
)

logger = logging.getLogger(__name__)

CONFLICTS_DIRNAME = "conflicts"
CONFLICTS_META_FILENAME = "conflicts.json"

# "note.md" -> "note (John's conflicted copy 2025-01-01).md"
_ACTOR_CONFLICT_RE = re.compile(
    r"^(.+?)\s+\((.+)'s conflicted copy (\d{4}-\d{2}-\d{2})\)\.md$", re.IGNORECASE
)
# "note.md" -> "note (conflicted copy 2025-01-01 1).md"
_GENERIC_CONFLICT_RE = re.compile(
    r"^(.+?)\s+\(conflicted copy \d{4}-\d{2}-\d{2}\s+\d+\)\.md$", re.IGNORECASE
)


def conflicts_path(vault_path: Path) -> Path:
    return Path(vault_path) / CONFLICTS_DIRNAME


def conflicts_meta_path(vault_path: Path) -> Path:
    return conflicts_path(vault_path) / CONFLICTS_META_FILENAME


def _match(filename: str) -> re.Match[str] | None:
    return _ACTOR_CONFLICT_RE.match(filename) or _GENERIC_CONFLICT_RE.match(filename)


def is_conflict_file(filename: str) -> bool:
    return _match(filename) is not None


def original_id_from_conflict(filename: str) -> str | None:
    """Strip the conflict marker and return the note id, if the rest looks like one."""
    match = _match(filename)
    if not match:
        return None
    original = match.group(1).strip()
    return original if is_valid_note_id(original) else None


def _mtime_iso(path: Path) -> str:
    stamp = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return format_timestamp(stamp)


async def scan_for_conflicts(vault_path: Path) -> list[str]:
    """Return the conflict-marked filenames currently sitting in the notes folder."""
    folder = notes_path(vault_path)
    if not folder.exists():
        return []
    names = await aiofiles.os.listdir(folder)
    return sorted(name for name in names if is_conflict_file(name))


async def list_conflicts(vault_path: Path) -> list[ConflictInfo]:
    meta_path = conflicts_meta_path(vault_path)
    try:
        async with aiofiles.open(meta_path, "r", encoding="utf-8") as f:
            raw = json.loads(await f.read())
    except FileNotFoundError:
        return []
    except json.JSONDecodeError as e:
        logger.warning("Conflict list %s is corrupt: %s", meta_path, e)
        return []

    conflicts = []
    for item in raw if isinstance(raw, list) else []:
        try:
            conflicts.append(ConflictInfo.from_dict(item))
        except (KeyError, TypeError) as e:
            logger.warning("Skipping malformed conflict record %s: %s", item, e)
    return conflicts


async def save_conflicts_meta(vault_path: Path, conflicts: list[ConflictInfo]) -> None:
    folder = conflicts_path(vault_path)
    folder.mkdir(parents=True, exist_ok=True)

    meta_path = conflicts_meta_path(vault_path)
    temp_path = meta_path.with_name(f".{CONFLICTS_META_FILENAME}.tmp")
    payload = json.dumps([c.to_dict() for c in conflicts], indent=2, ensure_ascii=False)
    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
        await f.write(payload)
    await aiofiles.os.replace(temp_path, meta_path)


def _unique_destination(folder: Path, filename: str) -> Path:
    dest = folder / filename
    if not dest.exists():
        return dest
    stem = dest.stem
    counter = 1
    while True:
        candidate = folder / f"{stem} [{counter}].md"
        if not candidate.exists():
            return candidate
        counter += 1


async def handle_conflict_file(vault_path: Path, filename: str) -> ConflictInfo | None:
    """Move a conflict-marked file into the conflicts area and record it.

    Returns:
        The recorded ConflictInfo, or None if the filename does not carry one of
        our note ids (or the file vanished before it could be moved)
    """
    note_id = original_id_from_conflict(filename)
    if not note_id:
        logger.warning("Could not extract note id from conflict file: %s", filename)
        return None

    source = notes_path(vault_path) / filename
    if not source.exists():
        logger.debug("Conflict file already gone: %s", source)
        return None

    folder = conflicts_path(vault_path)
    folder.mkdir(parents=True, exist_ok=True)

    original = notes_path(vault_path) / note_filename(note_id)
    original_mod_time = _mtime_iso(original) if original.exists() else format_timestamp(utc_now())
    conflict_mod_time = _mtime_iso(source)

    dest = _unique_destination(folder, filename)
    await aiofiles.os.replace(source, dest)

    info = ConflictInfo(
        note_id=note_id,
        conflict_path=f"{CONFLICTS_DIRNAME}/{dest.name}",
        detected_at=format_timestamp(utc_now()),
        original_mod_time=original_mod_time,
        conflict_mod_time=conflict_mod_time,
    )

    conflicts = await list_conflicts(vault_path)
    conflicts.append(info)
    await save_conflicts_meta(vault_path, conflicts)

    logger.info("Moved conflicted copy of note %s to %s", note_id, info.conflict_path)
    return info


async def resolve_conflict(vault_path: Path, conflict: ConflictInfo, keep_conflict: bool) -> None:
    """Resolve a conflict by keeping one version.

    Args:
        vault_path: Vault root
        conflict: The conflict to resolve
        keep_conflict: If True the conflict copy replaces the live note file
    """
    conflict_file = Path(vault_path) / conflict.conflict_path
    original = notes_path(vault_path) / note_filename(conflict.note_id)

    if keep_conflict and conflict_file.exists():
        await aiofiles.os.replace(conflict_file, original)
        logger.info("Kept conflicted copy for note %s", conflict.note_id)
    elif conflict_file.exists():
        await aiofiles.os.remove(conflict_file)

    remaining = [
        c for c in await list_conflicts(vault_path) if c.conflict_path != conflict.conflict_path
    ]
    await save_conflicts_meta(vault_path, remaining)


async def get_conflict_versions(
    vault_path: Path, conflict: ConflictInfo
) -> tuple[Note | None, Note | None]:
    """Read both sides of a conflict so they can be compared."""
    conflict_file = Path(vault_path) / conflict.conflict_path
    original_file = notes_path(vault_path) / note_filename(conflict.note_id)

    async def read(path: Path) -> Note | None:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return parse_note(await f.read(), path.name)
        except FileNotFoundError:
            return None

    return await read(original_file), await read(conflict_file)


def merge_notes(original: Note, conflict: Note) -> Note:
    """Concatenate both bodies under a banner and union tags and reminders.

    The result is only a candidate; the caller decides whether to save it.
    """
    banner = f"**[Merged from conflict - {format_timestamp(utc_now())}]**"
    content = f"{original.content}\n\n---\n{banner}\n\n{conflict.content}"

    tags = list(original.tags)
    tags.extend(tag for tag in conflict.tags if tag not in tags)

    seen_times = {r.time for r in original.reminders}
    reminders: list[Reminder] = list(original.reminders)
    for reminder in conflict.reminders:
        if reminder.time not in seen_times:
            reminders.append(reminder)
            seen_times.add(reminder.time)

    return replace(
        original,
        content=content,
        updated=advance_timestamp(original.updated),
        tags=tags,
        reminders=reminders,
    )
