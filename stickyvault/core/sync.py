"""Reconciliation between the local vault and the remote note folder."""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from stickyvault.core.config import SyncConfig
from stickyvault.core.models import BulkSyncResult, Note, SyncResult
from stickyvault.core.vault import LocalVault
from stickyvault.sources.notes.conflicts import is_conflict_file
from stickyvault.sources.notes.markdown import format_timestamp, note_filename, render_note, utc_now
from stickyvault.sources.remote.base import (
    AuthenticationError,
    CredentialProvider,
    NotAuthenticatedError,
    RemoteEntry,
    RemoteError,
    RemoteFolderMissing,
    RemoteStore,
)
from stickyvault.utils.db import SyncStateDB
from stickyvault.utils.events import EventBus
from stickyvault.utils.settings_db import KeyValueStore, record_last_sync

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_ERROR = "error"
STATUS_OFFLINE = "offline"
STATUS_NOT_CONNECTED = "not-connected"


class _AuthAborted(Exception):
    """Credentials are unusable even after one refresh; the pass must stop."""


def content_hash(note: Note) -> str:
    """Hash of the exact bytes that would be uploaded for ``note``."""
    return hashlib.sha256(render_note(note).encode("utf-8")).hexdigest()


class RemoteSyncEngine:
    """
    Makes the remote folder and the local vault converge.

    One pass runs these phases:
    1. Ensure the remote folder exists ("already exists" is fine)
    2. List the remote folder
    3. Delete remote copies of locally deleted notes, then download remote
       notes that are missing locally or newer by more than the tolerance
    4. Delete local notes absent remotely once they are older than the grace
       window; younger ones are left for upload. Skipped when the folder was
       missing, since an empty new folder says nothing about deletions
    5. Upload local notes whose content hash changed since the last upload,
       or every note when the folder was missing

    Every decision is re-derived from current state, so a pass can be re-run at
    any time. Only one pass runs at once; a trigger during a pass returns a
    result with status "busy". The tolerance and grace windows are heuristics:
    two devices editing the same note within the tolerance window are resolved
    by whichever side the comparison happens to favor.
    """

    def __init__(
        self,
        vault: LocalVault,
        remote: RemoteStore,
        state_db: SyncStateDB,
        config: SyncConfig,
        credentials: CredentialProvider | None = None,
        settings: KeyValueStore | None = None,
    ):
        self.vault = vault
        self.remote = remote
        self.state_db = state_db
        self.config = config
        self.credentials = credentials
        self.settings = settings

        self.tolerance = timedelta(seconds=config.tolerance_seconds)
        self.grace = timedelta(seconds=config.grace_seconds)

        self._lock = asyncio.Lock()
        self._status = STATUS_IDLE
        self._status_events: EventBus[str] = EventBus()
        self._refreshed = False

    async def initialize(self) -> None:
        await self.state_db.initialize()
        logger.info("Sync engine initialized for remote folder %s", self.config.remote_folder)

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def on_status_change(self, listener: Callable[[str], None]) -> Callable[[], None]:
        return self._status_events.subscribe(listener)

    def _set_status(self, status: str) -> None:
        if status != self._status:
            self._status = status
            self._status_events.emit(status)

    def remote_path(self, note_id: str) -> str:
        folder = self.config.remote_folder.rstrip("/")
        return f"{folder}/{note_filename(note_id)}"

    async def _call(self, func: Callable[..., Awaitable[T]], *args) -> T:
        """Run a remote call, refreshing credentials at most once per pass on auth failure."""
        try:
            return await func(*args)
        except (AuthenticationError, NotAuthenticatedError) as e:
            if self._refreshed or self.credentials is None:
                raise _AuthAborted(str(e)) from e
            self._refreshed = True
            logger.info("Remote rejected credentials, attempting one refresh")
            if not await self.credentials.refresh():
                raise _AuthAborted(str(e)) from e

        try:
            return await func(*args)
        except (AuthenticationError, NotAuthenticatedError) as e:
            raise _AuthAborted(str(e)) from e

    # Full pass

    async def sync(self) -> SyncResult:
        """Run one full reconciliation pass."""
        if self._lock.locked():
            logger.info("Sync already in progress, skipping trigger")
            return SyncResult(status="busy")

        async with self._lock:
            self._refreshed = False
            self._set_status(STATUS_SYNCING)
            result = SyncResult()
            try:
                await self._run_pass(result)
            except _AuthAborted as e:
                logger.error("Sync aborted, not authenticated: %s", e)
                result.status = "not-authenticated"
                result.errors.append(f"Not authenticated: {e}")
                self._set_status(STATUS_NOT_CONNECTED)
            else:
                if result.status == "offline":
                    self._set_status(STATUS_OFFLINE)
                elif result.errors:
                    self._set_status(STATUS_ERROR)
                else:
                    self._set_status(STATUS_IDLE)

        logger.info("Sync complete: %s", result.summary())
        self._remember(result)
        return result

    def _remember(self, result: SyncResult) -> None:
        if self.settings is None:
            return
        record_last_sync(
            {
                "finished_at": format_timestamp(utc_now()),
                "status": result.status,
                "uploaded": result.uploaded,
                "downloaded": result.downloaded,
                "deleted_local": result.deleted_local,
                "deleted_remote": result.deleted_remote,
                "skipped": result.skipped,
                "conflicts": len(result.conflicts),
                "errors": len(result.errors),
            },
            self.settings,
        )

    async def _ensure_folder(self, result: SyncResult) -> bool:
        """Create the remote folder if needed. True means it did not exist before."""
        try:
            return await self._call(self.remote.create_folder, self.config.remote_folder)
        except RemoteError as e:
            logger.warning("Could not ensure remote folder %s: %s", self.config.remote_folder, e)
            result.errors.append(f"create folder: {e}")
            return False

    async def _run_pass(self, result: SyncResult) -> None:
        folder_missing = await self._ensure_folder(result)

        try:
            entries = await self._call(self.remote.list_folder, self.config.remote_folder)
        except RemoteFolderMissing:
            logger.warning("Remote folder %s is missing", self.config.remote_folder)
            entries, folder_missing = [], True
        except RemoteError as e:
            logger.error("Could not list remote folder: %s", e)
            result.errors.append(f"list folder: {e}")
            result.status = "offline" if e.status is None else "error"
            return

        remote: dict[str, RemoteEntry] = {}
        for entry in entries:
            if is_conflict_file(entry.name):
                result.conflicts.append(entry.name)
            elif entry.note_id:
                remote[entry.note_id] = entry
            else:
                logger.debug("Ignoring remote file %s", entry.name, extra={"log_category": "sync"})

        tombstones = set(self.vault.deleted_note_ids())
        downloaded: set[str] = set()

        for note_id, entry in remote.items():
            if note_id in tombstones:
                await self._propagate_deletion(note_id, entry, result)
            elif self._should_download(note_id, entry):
                if await self._download(note_id, entry, result):
                    downloaded.add(note_id)

        # An empty listing of a folder that was just (re)created says nothing
        # about which notes were deleted remotely.
        if folder_missing:
            logger.info("Skipping remote deletion check, %s was missing", self.config.remote_folder)
        else:
            await self._reconcile_deletions(remote, result)

        for note in self.vault.get_all_notes():
            if note.id in downloaded:
                continue
            await self._maybe_upload(note, remote.get(note.id), result, force=folder_missing)

        if result.errors and result.status == "ok":
            result.status = "partial"

    def _should_download(self, note_id: str, entry: RemoteEntry) -> bool:
        local = self.vault.get_note(note_id)
        if local is None:
            return True
        return entry.modified - local.updated > self.tolerance

    async def _propagate_deletion(self, note_id: str, entry: RemoteEntry, result: SyncResult) -> None:
        try:
            if await self._call(self.remote.delete, entry.path):
                result.deleted_remote += 1
                logger.info("Deleted note %s remotely", note_id)
            await self.state_db.delete_hash(note_id)
        except RemoteError as e:
            logger.error("Failed to delete %s remotely: %s", note_id, e)
            result.errors.append(f"delete {note_id}: {e}")

    async def _download(self, note_id: str, entry: RemoteEntry, result: SyncResult) -> bool:
        try:
            data = await self._call(self.remote.download, entry.path)
            raw = data.decode("utf-8")
        except RemoteError as e:
            logger.error("Failed to download %s: %s", entry.name, e)
            result.errors.append(f"download {note_id}: {e}")
            return False
        except UnicodeDecodeError as e:
            logger.error("Remote file %s is not UTF-8: %s", entry.name, e)
            result.errors.append(f"download {note_id}: not UTF-8")
            return False

        note = await self.vault.apply_remote_note(note_id, raw)
        if note is None:
            result.errors.append(f"download {note_id}: could not apply remote copy")
            return False

        await self.state_db.set_hash(note_id, content_hash(note))
        result.downloaded += 1
        logger.info("Downloaded note %s", note_id)
        return True

    async def _reconcile_deletions(self, remote: dict[str, RemoteEntry], result: SyncResult) -> None:
        now = utc_now()
        for note in self.vault.get_all_notes():
            if note.id in remote:
                continue
            if now - note.created <= self.grace:
                logger.debug("Note %s is new, will upload", note.id)
                continue
            logger.info("Note %s no longer exists remotely, removing locally", note.id)
            if await self.vault.delete_note(note.id, track_deletion=False):
                result.deleted_local += 1
            await self.state_db.delete_hash(note.id)

    async def _maybe_upload(
        self, note: Note, entry: RemoteEntry | None, result: SyncResult, force: bool = False
    ) -> None:
        current = content_hash(note)
        stored = await self.state_db.get_hash(note.id)
        if stored == current and not force:
            result.skipped += 1
            return

        if entry is not None:
            local_newer = note.updated - entry.modified > self.tolerance
            # A note we uploaded before and edited since, with the remote copy
            # not newer, still goes up even inside the tolerance window.
            edited_since_upload = stored is not None and note.updated >= entry.modified
            if not (local_newer or edited_since_upload):
                result.skipped += 1
                return

        try:
            await self._upload(note, current)
        except RemoteError as e:
            logger.error("Failed to upload %s: %s", note.id, e)
            result.errors.append(f"upload {note.id}: {e}")
            return
        result.uploaded += 1

    async def _upload(self, note: Note, digest: str) -> None:
        data = render_note(note).encode("utf-8")
        await self._call(self.remote.upload, self.remote_path(note.id), data, note.updated)
        await self.state_db.set_hash(note.id, digest)
        logger.info("Uploaded note %s", note.id)

    # Single-note operations

    async def upload_note(self, note: Note) -> bool:
        """Upload one note unless its hash matches the last upload. True means the remote is current."""
        self._refreshed = False
        digest = content_hash(note)
        if await self.state_db.get_hash(note.id) == digest:
            logger.debug("Note %s unchanged, skipping upload", note.id, extra={"log_category": "sync"})
            return True
        try:
            await self._call(self.remote.create_folder, self.config.remote_folder)
            await self._upload(note, digest)
        except _AuthAborted as e:
            logger.error("Cannot upload %s, not authenticated: %s", note.id, e)
            self._set_status(STATUS_NOT_CONNECTED)
            return False
        except RemoteError as e:
            logger.error("Failed to upload %s: %s", note.id, e)
            return False
        return True

    async def delete_remote_note(self, note_id: str) -> bool:
        """Delete one note remotely; a note that is already gone counts as success."""
        self._refreshed = False
        try:
            await self._call(self.remote.delete, self.remote_path(note_id))
        except _AuthAborted as e:
            logger.error("Cannot delete %s, not authenticated: %s", note_id, e)
            self._set_status(STATUS_NOT_CONNECTED)
            return False
        except RemoteError as e:
            logger.error("Failed to delete %s remotely: %s", note_id, e)
            return False
        await self.state_db.delete_hash(note_id)
        return True

    async def sync_all_notes(self, notes: list[Note] | None = None) -> BulkSyncResult:
        """Push every given note (default: all vault notes) without reconciliation."""
        result = BulkSyncResult()
        async with self._lock:
            candidates = self.vault.get_all_notes() if notes is None else notes
            logger.info("Pushing %d notes", len(candidates))
            for note in candidates:
                if await self.state_db.get_hash(note.id) == content_hash(note):
                    result.skipped += 1
                elif await self.upload_note(note):
                    result.uploaded += 1
                else:
                    result.errors += 1

        logger.info(
            "Push complete: %d uploaded, %d skipped, %d errors",
            result.uploaded,
            result.skipped,
            result.errors,
        )
        return result

    async def test_connection(self) -> tuple[bool, str]:
        """Returns (ok, account name or error message)."""
        self._refreshed = False
        try:
            name = await self._call(self.remote.test_connection)
        except _AuthAborted as e:
            self._set_status(STATUS_NOT_CONNECTED)
            return False, f"Not authenticated: {e}"
        except RemoteError as e:
            self._set_status(STATUS_OFFLINE if e.status is None else STATUS_ERROR)
            return False, str(e)
        if self._status in (STATUS_NOT_CONNECTED, STATUS_OFFLINE):
            self._set_status(STATUS_IDLE)
        return True, name
