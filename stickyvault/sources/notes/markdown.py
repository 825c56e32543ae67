"""Note file format: a metadata block between ``---`` markers plus a markdown body.

Example::

    ---
    id: 0b0f5c1e-9a55-4b87-a3a4-0c2c5bdbf7a1
    title: Groceries
    created: 2025-01-01T09:00:00.000Z
    updated: 2025-01-01T09:05:12.345Z
    pinned: false
    color: #FFE066
    tags: ["home", "errands"]
    reminders: []
    encrypted: false
    ---
    - [ ] milk
    - [x] eggs

Parsing never raises on bad field values; it substitutes defaults. Only a blob
with no metadata block at all is rejected.
"""

import json
import logging
import re
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from stickyvault.core.models import DEFAULT_NOTE_COLOR, CheckboxItem, Note, Reminder

logger = logging.getLogger(__name__)

NOTE_EXTENSION = ".md"
DEFAULT_TITLE = "Untitled Note"
TITLE_MAX_LENGTH = 100

# Accepts UUIDs as well as shorter ids written by other clients; no spaces or dots.
NOTE_ID_PATTERN = r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}"
_NOTE_ID_RE = re.compile(rf"^{NOTE_ID_PATTERN}$")
_NOTE_FILENAME_RE = re.compile(rf"^({NOTE_ID_PATTERN})\.md$", re.IGNORECASE)

_FRONTMATTER_RE = re.compile(r"^---[ \t]*\r?\n(?:(.*?)\r?\n)?---[ \t]*(?:\r?\n|$)(.*)$", re.DOTALL)
_CHECKBOX_RE = re.compile(r"^(\s*)[-*]\s+\[([ xX])\]\s+(.*)$")
_CHECKBOX_TOGGLE_RE = re.compile(r"^(\s*[-*]\s+\[)([ xX])(\]\s+.*)$")
_HEADING_RE = re.compile(r"^#+\s+(.+)$")

_BOOL_KEYS = {"pinned", "encrypted"}
_LIST_KEYS = {"tags", "reminders"}


def utc_now() -> datetime:
    """Current UTC time truncated to the millisecond precision the file format stores."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 timestamp, returning None when it is missing or invalid."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def advance_timestamp(previous: datetime) -> datetime:
    """Return a fresh timestamp that is never earlier than ``previous``."""
    now = utc_now()
    if now <= previous:
        return previous + timedelta(milliseconds=1)
    return now


def generate_note_id() -> str:
    return str(uuid.uuid4())


def note_filename(note_id: str) -> str:
    return f"{note_id}{NOTE_EXTENSION}"


def extract_note_id(filename: str) -> str | None:
    """Return the note id encoded in a note filename, or None for any other file."""
    match = _NOTE_FILENAME_RE.match(filename)
    return match.group(1) if match else None


def is_valid_note_id(value: str) -> bool:
    return bool(_NOTE_ID_RE.match(value))


def new_note(**fields) -> Note:
    """Create a note with a fresh id and timestamps, merging ``fields`` over defaults.

    ``id``, ``created`` and ``updated`` are always generated.
    """
    for key in ("id", "created", "updated"):
        fields.pop(key, None)
    now = utc_now()
    return Note(
        id=generate_note_id(),
        title=fields.pop("title", None) or DEFAULT_TITLE,
        content=fields.pop("content", None) or "",
        created=now,
        updated=now,
        color=fields.pop("color", None) or DEFAULT_NOTE_COLOR,
        pinned=bool(fields.pop("pinned", False)),
        tags=list(fields.pop("tags", None) or []),
        reminders=list(fields.pop("reminders", None) or []),
        encrypted=bool(fields.pop("encrypted", False)),
    )


# Parsing


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def _parse_list(raw: str) -> list:
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return parsed
    except json.JSONDecodeError:
        pass
    inner = raw.strip()[1:-1].strip()
    if not inner:
        return []
    return [_strip_quotes(item.strip()) for item in inner.split(",") if item.strip()]


def _parse_metadata_block(block: str) -> dict[str, object]:
    data: dict[str, object] = {}
    current_list_key: str | None = None

    for line in block.splitlines():
        if not line.strip():
            continue

        stripped = line.strip()
        if current_list_key and stripped.startswith("- "):
            items = data.setdefault(current_list_key, [])
            if isinstance(items, list):
                items.append(_strip_quotes(stripped[2:].strip()))
            continue

        if ":" not in line:
            current_list_key = None
            continue

        key, _, value = line.partition(":")
        key = key.strip()
        value = value.strip()
        current_list_key = None

        if key in _LIST_KEYS:
            if not value:
                current_list_key = key
                data[key] = []
            elif value.startswith("[") and value.endswith("]"):
                data[key] = _parse_list(value)
            continue

        if key in _BOOL_KEYS:
            data[key] = value.lower() == "true"
            continue

        data[key] = _strip_quotes(value)

    return data


def _parse_reminders(raw: object) -> list[Reminder]:
    if not isinstance(raw, list):
        return []
    reminders = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        message = item.get("message")
        reminders.append(
            Reminder(
                id=str(item.get("id") or generate_note_id()),
                time=str(item.get("time") or format_timestamp(utc_now())),
                message=str(message) if message is not None else None,
                acknowledged=bool(item.get("acknowledged", False)),
            )
        )
    return reminders


def parse_note(raw: str, filename: str | None = None) -> Note | None:
    """Parse raw file content into a Note.

    Args:
        raw: File content
        filename: Optional filename used to derive the id when the block has none

    Returns:
        The parsed Note, or None if no metadata block is present
    """
    working = raw.lstrip("\ufeff")
    match = _FRONTMATTER_RE.match(working)
    if not match:
        logger.debug("No metadata block found%s", f" in {filename}" if filename else "")
        return None

    data = _parse_metadata_block(match.group(1) or "")
    body = match.group(2).strip("\r\n")
    now = utc_now()

    note_id = str(data.get("id") or "").strip()
    if not note_id and filename:
        note_id = extract_note_id(filename) or ""
    if not note_id:
        note_id = generate_note_id()

    tags = data.get("tags")
    color = str(data.get("color") or "").strip()

    return Note(
        id=note_id,
        title=str(data.get("title") or "").strip() or DEFAULT_TITLE,
        content=body,
        created=parse_timestamp(data.get("created")) or now,
        updated=parse_timestamp(data.get("updated")) or now,
        color=color or DEFAULT_NOTE_COLOR,
        pinned=data.get("pinned") is True,
        tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        reminders=_parse_reminders(data.get("reminders")),
        encrypted=data.get("encrypted") is True,
    )


# Serialization


def _format_tags(tags: list[str]) -> str:
    return "[" + ", ".join(json.dumps(tag, ensure_ascii=False) for tag in tags) + "]"


def _single_line(value: str) -> str:
    return " ".join(value.splitlines()).strip()


def render_note(note: Note) -> str:
    """Render a note exactly as held, without touching its timestamps.

    This is the byte representation written to disk and uploaded, so equal
    output means an identical remote copy.
    """
    reminders = json.dumps([r.to_dict() for r in note.reminders], ensure_ascii=False)
    lines = [
        "---",
        f"id: {note.id}",
        f"title: {_single_line(note.title) or DEFAULT_TITLE}",
        f"created: {format_timestamp(note.created)}",
        f"updated: {format_timestamp(note.updated)}",
        f"pinned: {'true' if note.pinned else 'false'}",
        f"color: {note.color}",
        f"tags: {_format_tags(note.tags)}",
        f"reminders: {reminders}",
        f"encrypted: {'true' if note.encrypted else 'false'}",
        "---",
        note.content,
    ]
    return "\n".join(lines) + "\n"


def touch_note(note: Note) -> Note:
    """Return a copy of the note with ``updated`` stamped to now (never moving backwards)."""
    return replace(note, updated=advance_timestamp(note.updated))


def serialize_note(note: Note) -> str:
    """Serialize a note for writing, stamping ``updated`` to the time of writing."""
    return render_note(touch_note(note))


def normalize_note(note: Note) -> Note:
    """Return the note as it reads back from its rendered file.

    Titles are flattened to one line and trimmed, body edges lose their
    newlines and timestamps drop below milliseconds.
    """
    parsed = parse_note(render_note(note))
    return note if parsed is None else replace(parsed, id=note.id)


# Content helpers


def extract_title_from_content(content: str) -> str:
    """Use the first heading, or else the first non-empty line, as a title."""
    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        heading = _HEADING_RE.match(trimmed)
        if heading:
            return heading.group(1)[:TITLE_MAX_LENGTH]
        return trimmed[:TITLE_MAX_LENGTH]
    return DEFAULT_TITLE


def parse_checkboxes(content: str) -> list[CheckboxItem]:
    items = []
    for index, line in enumerate(content.split("\n")):
        match = _CHECKBOX_RE.match(line)
        if match:
            items.append(
                CheckboxItem(
                    line_index=index,
                    text=match.group(3),
                    checked=match.group(2).lower() == "x",
                    original_line=line,
                )
            )
    return items


def toggle_checkbox(content: str, line_index: int) -> str:
    """Flip the checkbox on ``line_index``; out-of-range or non-checkbox lines are left alone."""
    lines = content.split("\n")
    if line_index < 0 or line_index >= len(lines):
        return content

    match = _CHECKBOX_TOGGLE_RE.match(lines[line_index])
    if match:
        checked = match.group(2).lower() == "x"
        lines[line_index] = f"{match.group(1)}{' ' if checked else 'x'}{match.group(3)}"
    return "\n".join(lines)


def add_checkbox(content: str, text: str, at_end: bool = True) -> str:
    new_line = f"- [ ] {text}"
    if not content.strip():
        return new_line
    return f"{content}\n{new_line}" if at_end else f"{new_line}\n{content}"


def content_preview(content: str, max_length: int = 100) -> str:
    """Plain-text preview with markdown decoration removed."""
    preview = re.sub(r"^#+\s+", "", content, flags=re.MULTILINE)
    preview = re.sub(r"\*\*([^*]+)\*\*", r"\1", preview)
    preview = re.sub(r"\*([^*]+)\*", r"\1", preview)
    preview = re.sub(r"`([^`]+)`", r"\1", preview)
    preview = re.sub(r"^\s*[-*]\s+\[[ xX]\]\s*", "☐ ", preview, flags=re.MULTILINE)
    preview = re.sub(r"^\s*[-*]\s+", "• ", preview, flags=re.MULTILINE)
    preview = re.sub(r"\n+", " ", preview).strip()

    if len(preview) > max_length:
        preview = preview[: max_length - 3] + "..."
    return preview
