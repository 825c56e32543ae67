"""Secure credential storage using the system keyring."""

import logging

import httpx
import keyring
import keyring.errors

from stickyvault.sources.remote.base import CredentialProvider

logger = logging.getLogger(__name__)

SERVICE_NAME = "StickyVault"
DEFAULT_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"


class CredentialStore:
    """Stores Dropbox tokens in the system keyring, one set per app key."""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    @staticmethod
    def _key(app_key: str | None, kind: str) -> str:
        return f"dropbox:{app_key or 'default'}:{kind}"

    def set_dropbox_tokens(
        self, app_key: str | None, access_token: str, refresh_token: str | None = None
    ) -> None:
        """
        Store Dropbox tokens.

        Raises:
            keyring.errors.PasswordSetError: If the tokens cannot be stored
        """
        try:
            keyring.set_password(self.service_name, self._key(app_key, "access"), access_token)
            if refresh_token:
                keyring.set_password(
                    self.service_name, self._key(app_key, "refresh"), refresh_token
                )
            logger.info(f"Stored Dropbox tokens for app key: {app_key or 'default'}")
        except keyring.errors.KeyringError as e:
            logger.error(f"Failed to store Dropbox tokens: {e}")
            raise

    def get_access_token(self, app_key: str | None) -> str | None:
        try:
            return keyring.get_password(self.service_name, self._key(app_key, "access"))
        except keyring.errors.KeyringError as e:
            logger.error(f"Failed to retrieve Dropbox access token: {e}")
            return None

    def get_refresh_token(self, app_key: str | None) -> str | None:
        try:
            return keyring.get_password(self.service_name, self._key(app_key, "refresh"))
        except keyring.errors.KeyringError as e:
            logger.error(f"Failed to retrieve Dropbox refresh token: {e}")
            return None

    def delete_access_token(self, app_key: str | None) -> bool:
        try:
            keyring.delete_password(self.service_name, self._key(app_key, "access"))
            return True
        except keyring.errors.PasswordDeleteError:
            return False

    def delete_dropbox_tokens(self, app_key: str | None) -> bool:
        """
        Delete both tokens.

        Returns:
            True if anything was deleted
        """
        deleted = self.delete_access_token(app_key)
        try:
            keyring.delete_password(self.service_name, self._key(app_key, "refresh"))
            deleted = True
        except keyring.errors.PasswordDeleteError:
            pass

        if deleted:
            logger.info(f"Deleted Dropbox tokens for app key: {app_key or 'default'}")
        else:
            logger.warning(f"No Dropbox tokens found for app key: {app_key or 'default'}")
        return deleted

    def has_dropbox_tokens(self, app_key: str | None) -> bool:
        return self.get_access_token(app_key) is not None


class DropboxCredentials(CredentialProvider):
    """Access token from the keyring, refreshed with the stored refresh token.

    A failed refresh clears the stored access token so the user is shown as
    signed out rather than retried forever.
    """

    def __init__(
        self,
        store: CredentialStore,
        app_key: str | None,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.app_key = app_key
        self.token_url = token_url
        self.timeout = timeout
        self._transport = transport

    async def get_access_token(self) -> str | None:
        return self.store.get_access_token(self.app_key)

    async def refresh(self) -> bool:
        refresh_token = self.store.get_refresh_token(self.app_key)
        if not refresh_token or not self.app_key:
            logger.warning("Cannot refresh Dropbox token: missing refresh token or app key")
            return False

        logger.info("Refreshing Dropbox access token")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": self.app_key,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Token refresh request failed: {e}")
            self.store.delete_access_token(self.app_key)
            return False

        if not response.is_success:
            logger.error(f"Token refresh failed: {response.status_code} {response.text[:200]}")
            self.store.delete_access_token(self.app_key)
            return False

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            logger.error("Token refresh response did not include an access token")
            self.store.delete_access_token(self.app_key)
            return False

        self.store.set_dropbox_tokens(self.app_key, access_token, payload.get("refresh_token"))
        logger.info("Dropbox access token refreshed")
        return True
