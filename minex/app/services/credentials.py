"""
Session credential storage.

Keeps the bearer token, the refresh token and the signed-in user's profile
in local storage.
"""

from typing import Any, Dict, Optional

from minex.app.core.constants import StorageKeys
from minex.app.services.storage import LocalStorage


class CredentialStore:

    def __init__(self, storage: LocalStorage):
        self._storage = storage

    async def get_auth_token(self) -> Optional[str]:
        return await self._storage.get_item(StorageKeys.AUTH_TOKEN)

    async def get_refresh_token(self) -> Optional[str]:
        return await self._storage.get_item(StorageKeys.REFRESH_TOKEN)

    async def get_user(self) -> Optional[Dict[str, Any]]:
        return await self._storage.get_item(StorageKeys.USER_DATA)

    async def save_session(
        self,
        auth_token: str,
        refresh_token: Optional[str] = None,
        user: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist the credentials returned by a login."""
        await self._storage.set_item(StorageKeys.AUTH_TOKEN, auth_token)
        if refresh_token is not None:
            await self._storage.set_item(StorageKeys.REFRESH_TOKEN, refresh_token)
        if user is not None:
            await self._storage.set_item(StorageKeys.USER_DATA, user)

    async def update_tokens(self, auth_token: str, refresh_token: Optional[str] = None) -> None:
        """Store the result of a token refresh; the refresh token may be rotated."""
        await self._storage.set_item(StorageKeys.AUTH_TOKEN, auth_token)
        if refresh_token:
            await self._storage.set_item(StorageKeys.REFRESH_TOKEN, refresh_token)

    async def clear(self) -> None:
        """Forget every stored credential (forced re-authentication)."""
        for key in (StorageKeys.AUTH_TOKEN, StorageKeys.REFRESH_TOKEN, StorageKeys.USER_DATA):
            await self._storage.remove_item(key)
