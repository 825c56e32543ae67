"""Shared test fixtures and fakes."""

import asyncio
from datetime import datetime, timezone

import keyring
import keyring.errors
import pytest
import pytest_asyncio

from stickyvault.core.config import SyncConfig
from stickyvault.core.models import Note
from stickyvault.core.sync import RemoteSyncEngine
from stickyvault.core.vault import LocalVault
from stickyvault.sources.notes.markdown import extract_note_id, render_note, utc_now
from stickyvault.sources.remote.base import (
    AuthenticationError,
    CredentialProvider,
    RemoteEntry,
    RemoteError,
    RemoteFolderMissing,
    RemoteStore,
)
from stickyvault.utils.db import SyncStateDB


class FakeRemote(RemoteStore):
    """In-memory stand-in for the Dropbox folder.

    Modification times are truncated to whole seconds like the real service.
    """

    def __init__(self):
        self.files: dict[str, tuple[bytes, datetime]] = {}
        self.folders: set[str] = set()
        self.uploads: list[str] = []
        self.downloads: list[str] = []
        self.deletes: list[str] = []
        self.auth_failures = 0
        self.fail_uploads: set[str] = set()
        self.list_gate: asyncio.Event | None = None

    def put(self, path: str, data: bytes | str, modified: datetime) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.files[path] = (data, modified.replace(microsecond=0))
        self.folders.add(path.rsplit("/", 1)[0])

    def drop_folder(self, path: str) -> None:
        """Remove a folder and everything in it, as another device might."""
        self.folders.discard(path)
        prefix = path.rstrip("/") + "/"
        for file_path in [p for p in self.files if p.startswith(prefix)]:
            del self.files[file_path]

    def put_note(self, note: Note, folder: str = "/notes", modified: datetime | None = None) -> None:
        self.put(f"{folder}/{note.id}.md", render_note(note), modified or note.updated)

    def _check_auth(self) -> None:
        if self.auth_failures > 0:
            self.auth_failures -= 1
            raise AuthenticationError("expired_access_token", status=401, summary="expired_access_token/")

    async def create_folder(self, path: str) -> bool:
        self._check_auth()
        created = path not in self.folders
        self.folders.add(path)
        return created

    async def list_folder(self, path: str) -> list[RemoteEntry]:
        self._check_auth()
        if self.list_gate is not None:
            await self.list_gate.wait()
        if path not in self.folders:
            raise RemoteFolderMissing(f"{path} not found", status=409, summary="path/not_found/")
        prefix = path.rstrip("/") + "/"
        entries = []
        for file_path, (data, modified) in sorted(self.files.items()):
            if not file_path.startswith(prefix):
                continue
            name = file_path[len(prefix):]
            entries.append(
                RemoteEntry(
                    name=name,
                    path=file_path,
                    modified=modified,
                    note_id=extract_note_id(name),
                    size=len(data),
                )
            )
        return entries

    async def upload(self, path: str, data: bytes, modified: datetime) -> None:
        self._check_auth()
        if path in self.fail_uploads:
            raise RemoteError(f"upload {path} failed", status=500)
        self.uploads.append(path)
        self.put(path, data, modified)

    async def download(self, path: str) -> bytes:
        self._check_auth()
        self.downloads.append(path)
        return self.files[path][0]

    async def delete(self, path: str) -> bool:
        self._check_auth()
        self.deletes.append(path)
        return self.files.pop(path, None) is not None

    async def test_connection(self) -> str:
        self._check_auth()
        return "Test User"


class FakeCredentials(CredentialProvider):
    def __init__(self, token: str | None = "token", refresh_ok: bool = True):
        self.token = token
        self.refresh_ok = refresh_ok
        self.refresh_calls = 0

    async def get_access_token(self) -> str | None:
        return self.token

    async def refresh(self) -> bool:
        self.refresh_calls += 1
        if self.refresh_ok:
            self.token = "refreshed"
        return self.refresh_ok


@pytest.fixture
def vault_path(tmp_path):
    return tmp_path / "vault"


@pytest_asyncio.fixture
async def vault(vault_path):
    v = LocalVault(vault_path, watch_files=False)
    await v.initialize()
    yield v
    await v.destroy()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def sync_config():
    return SyncConfig(enabled=True, remote_folder="/notes", tolerance_seconds=2.0, grace_seconds=30.0)


@pytest_asyncio.fixture
async def state_db(tmp_path):
    db = SyncStateDB(tmp_path / "data" / "sync_state.db")
    await db.initialize()
    return db


@pytest_asyncio.fixture
async def engine(vault, remote, state_db, sync_config, credentials):
    e = RemoteSyncEngine(vault, remote, state_db, sync_config, credentials=credentials)
    await e.initialize()
    return e


@pytest.fixture
def long_ago():
    return datetime(2020, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_note():
    """Build a Note directly, bypassing the vault."""

    def _make(note_id: str, content: str = "", **fields) -> Note:
        now = utc_now()
        return Note(
            id=note_id,
            title=fields.pop("title", note_id),
            content=content,
            created=fields.pop("created", now),
            updated=fields.pop("updated", now),
            **fields,
        )

    return _make


@pytest.fixture
def memory_keyring(monkeypatch):
    """Replace the system keyring with a dict."""
    store: dict[tuple[str, str], str] = {}

    def set_password(service, user, password):
        store[(service, user)] = password

    def get_password(service, user):
        return store.get((service, user))

    def delete_password(service, user):
        if (service, user) not in store:
            raise keyring.errors.PasswordDeleteError("not found")
        del store[(service, user)]

    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return store
