"""Interfaces for the remote file store and its credentials."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


class RemoteError(Exception):
    """A remote request failed.

    Attributes:
        status: HTTP status code, if the server answered
        summary: Short machine-readable error summary from the server
    """

    def __init__(self, message: str, status: int | None = None, summary: str | None = None):
        super().__init__(message)
        self.status = status
        self.summary = summary


class AuthenticationError(RemoteError):
    """The access token was rejected."""


class RemoteFolderMissing(RemoteError):
    """The folder being listed does not exist."""


class NotAuthenticatedError(Exception):
    """No credentials are available at all."""


@dataclass
class RemoteEntry:
    """A note file in the remote folder."""

    name: str
    path: str
    modified: datetime
    note_id: str | None = None
    rev: str | None = None
    size: int = 0


class CredentialProvider(ABC):
    @abstractmethod
    async def get_access_token(self) -> str | None:
        """Return the current access token, or None when not signed in."""

    @abstractmethod
    async def refresh(self) -> bool:
        """Try to obtain a new access token. Returns True on success."""


class RemoteStore(ABC):
    """A folder-addressable file store holding one file per note."""

    @abstractmethod
    async def create_folder(self, path: str) -> bool:
        """Create ``path``. Returns False if it already existed, which is not an error."""

    @abstractmethod
    async def list_folder(self, path: str) -> list[RemoteEntry]:
        """List the files directly in ``path``.

        Raises RemoteFolderMissing when ``path`` does not exist, so callers can
        tell a missing folder from an empty one.
        """

    @abstractmethod
    async def upload(self, path: str, data: bytes, modified: datetime) -> None:
        """Write ``data`` to ``path``, overwriting, with the given modification time."""

    @abstractmethod
    async def download(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete ``path``. Returns False if it did not exist."""

    @abstractmethod
    async def test_connection(self) -> str:
        """Return the account display name; raises RemoteError when unreachable."""

    async def close(self) -> None:
        return None
