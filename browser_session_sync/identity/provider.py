"""
Credential provider interface.

The sync engine never authenticates by itself: it asks a provider for
the current bearer token before talking to the remote store. Login,
registration and token issuance happen elsewhere.
"""

from abc import ABC, abstractmethod

from ..local.kv_store import KeyValueStore

AUTH_TOKEN_KEY = "authToken"


class CredentialProvider(ABC):
    """Source of the bearer credential attached to remote calls."""

    @abstractmethod
    async def get_token(self) -> str | None:
        """Get the current bearer token.

        Returns:
            The token, or None when the user is not authenticated
        """
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Forget the stored credential (sign out).

        After this, get_token() returns None until re-authentication.
        """
        ...

    async def is_authenticated(self) -> bool:
        return bool(await self.get_token())


class StaticCredentialProvider(CredentialProvider):
    """Provider holding a token in memory."""

    def __init__(self, token: str | None = None):
        self._token = token

    async def get_token(self) -> str | None:
        return self._token

    async def set_token(self, token: str) -> None:
        self._token = token

    async def clear(self) -> None:
        self._token = None


class KeyValueCredentialProvider(CredentialProvider):
    """Provider reading the token the login flow saved in the key-value store."""

    def __init__(self, store: KeyValueStore, key: str = AUTH_TOKEN_KEY):
        self.store = store
        self.key = key

    async def get_token(self) -> str | None:
        token = await self.store.get(self.key)
        return token if isinstance(token, str) and token else None

    async def set_token(self, token: str) -> None:
        await self.store.set(self.key, token)

    async def clear(self) -> None:
        await self.store.remove(self.key)
