"""Dropbox HTTP file API client."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from stickyvault.sources.notes.markdown import extract_note_id, parse_timestamp
from stickyvault.sources.remote.base import (
    AuthenticationError,
    CredentialProvider,
    NotAuthenticatedError,
    RemoteEntry,
    RemoteError,
    RemoteFolderMissing,
    RemoteStore,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.dropboxapi.com"
DEFAULT_CONTENT_URL = "https://content.dropboxapi.com"


def _dropbox_time(value: datetime) -> str:
    """Dropbox accepts client_modified at second precision only."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _error_summary(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("error_summary") or data.get("error_description") or data)
    return str(data)


class DropboxClient(RemoteStore):
    """Talks to the Dropbox v2 API with a bearer token from a CredentialProvider.

    Only the handful of endpoints needed to mirror a flat folder of note files
    are used: create_folder_v2, list_folder(/continue), upload, download,
    delete_v2 and get_current_account.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        api_url: str = DEFAULT_API_URL,
        content_url: str = DEFAULT_CONTENT_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            credentials: Supplies the access token for each request
            api_url: RPC endpoint base
            content_url: Upload/download endpoint base
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.credentials = credentials
        self.api_url = api_url.rstrip("/")
        self.content_url = content_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.credentials.get_access_token()
        if not token:
            raise NotAuthenticatedError("No Dropbox access token configured")
        return {"Authorization": f"Bearer {token}"}

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        summary = _error_summary(response)
        if response.status_code == 401:
            raise AuthenticationError(
                f"{what}: access token rejected ({summary})",
                status=401,
                summary=summary,
            )
        raise RemoteError(
            f"{what} failed with HTTP {response.status_code}: {summary}",
            status=response.status_code,
            summary=summary,
        )

    async def _rpc(self, endpoint: str, payload: dict[str, Any] | None) -> httpx.Response:
        headers = await self._auth_headers()
        url = f"{self.api_url}/2/{endpoint}"
        try:
            if payload is None:
                return await self._client.post(url, headers=headers)
            return await self._client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise RemoteError(f"{endpoint}: {e}") from e

    async def create_folder(self, path: str) -> bool:
        response = await self._rpc("files/create_folder_v2", {"path": path, "autorename": False})
        if response.status_code == 409 and "path/conflict/folder" in _error_summary(response):
            logger.debug("Remote folder %s already exists", path)
            return False
        self._raise_for_status(response, f"create_folder {path}")
        logger.info("Created remote folder %s", path)
        return True

    async def list_folder(self, path: str) -> list[RemoteEntry]:
        response = await self._rpc("files/list_folder", {"path": path, "recursive": False})
        if response.status_code == 409:
            summary = _error_summary(response)
            if "path/not_found" in summary:
                raise RemoteFolderMissing(f"list_folder {path}: folder not found", status=409, summary=summary)
        self._raise_for_status(response, f"list_folder {path}")

        entries: list[RemoteEntry] = []
        data = response.json()
        while True:
            for item in data.get("entries", []):
                entry = self._to_entry(item)
                if entry is not None:
                    entries.append(entry)
            if not data.get("has_more"):
                break
            response = await self._rpc("files/list_folder/continue", {"cursor": data["cursor"]})
            self._raise_for_status(response, f"list_folder/continue {path}")
            data = response.json()

        logger.debug("Listed %d files in %s", len(entries), path)
        return entries

    @staticmethod
    def _to_entry(item: dict[str, Any]) -> RemoteEntry | None:
        if item.get(".tag") != "file":
            return None
        name = item.get("name", "")
        if not name.lower().endswith(".md"):
            return None
        modified = parse_timestamp(item.get("client_modified")) or parse_timestamp(
            item.get("server_modified")
        )
        if modified is None:
            modified = datetime.fromtimestamp(0, tz=timezone.utc)
        return RemoteEntry(
            name=name,
            path=item.get("path_display") or item.get("path_lower") or name,
            modified=modified,
            note_id=extract_note_id(name),
            rev=item.get("rev"),
            size=int(item.get("size", 0)),
        )

    async def upload(self, path: str, data: bytes, modified: datetime) -> None:
        arg = {
            "path": path,
            "mode": "overwrite",
            "autorename": False,
            "mute": True,
            "client_modified": _dropbox_time(modified),
        }
        headers = await self._auth_headers()
        headers["Content-Type"] = "application/octet-stream"
        headers["Dropbox-API-Arg"] = json.dumps(arg)
        try:
            response = await self._client.post(
                f"{self.content_url}/2/files/upload", headers=headers, content=data
            )
        except httpx.HTTPError as e:
            raise RemoteError(f"upload {path}: {e}") from e
        self._raise_for_status(response, f"upload {path}")
        logger.debug("Uploaded %s (rev %s)", path, response.json().get("rev"))

    async def download(self, path: str) -> bytes:
        headers = await self._auth_headers()
        headers["Dropbox-API-Arg"] = json.dumps({"path": path})
        try:
            response = await self._client.post(
                f"{self.content_url}/2/files/download", headers=headers
            )
        except httpx.HTTPError as e:
            raise RemoteError(f"download {path}: {e}") from e
        self._raise_for_status(response, f"download {path}")
        return response.content

    async def delete(self, path: str) -> bool:
        response = await self._rpc("files/delete_v2", {"path": path})
        if response.status_code == 409 and "path_lookup/not_found" in _error_summary(response):
            logger.debug("Remote file %s already gone", path)
            return False
        self._raise_for_status(response, f"delete {path}")
        return True

    async def test_connection(self) -> str:
        response = await self._rpc("users/get_current_account", None)
        self._raise_for_status(response, "get_current_account")
        name = response.json().get("name", {})
        return str(name.get("display_name") or "")
