"""Remote file store implementations."""

from .base import (
    AuthenticationError,
    CredentialProvider,
    NotAuthenticatedError,
    RemoteEntry,
    RemoteError,
    RemoteStore,
)
from .dropbox import DropboxClient

__all__ = [
    "AuthenticationError",
    "CredentialProvider",
    "NotAuthenticatedError",
    "RemoteEntry",
    "RemoteError",
    "RemoteStore",
    "DropboxClient",
]
