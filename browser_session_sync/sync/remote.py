"""
Remote session API client.

Consumes the server's CRUD contract for session records:

    POST   /sessions        -> 201 {id, modifiedAt, ...}
    PUT    /sessions/{id}   -> 200 {id, modifiedAt, ...}
    DELETE /sessions/{id}   -> 200 (404 counts as already deleted)
    GET    /sessions        -> 200 [{id, modifiedAt, ...}, ...]

HTTP failures are translated into the sync exception taxonomy so the
engine can decide between retrying, dropping and aborting.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from ..exceptions import (
    AuthenticationRequiredError,
    NetworkUnavailableError,
    RemoteServerError,
    RemoteSessionGoneError,
    ServerRejectedError,
)
from ..identity.provider import CredentialProvider
from ..protocol import RemoteSession

logger = logging.getLogger(__name__)

# Response envelopes used by the server variants.
_ENVELOPE_KEYS = ("data", "session", "sessions")

# Client-side statuses worth retrying rather than dropping.
_RETRYABLE_4XX = {408, 425, 429}


class RemoteSessionAPI(ABC):
    """Authenticated CRUD access to the remote session store."""

    @abstractmethod
    async def create_session(self, body: dict[str, Any]) -> RemoteSession:
        """Create a record; returns it with its server-assigned id."""
        ...

    @abstractmethod
    async def update_session(self, remote_id: str, body: dict[str, Any]) -> RemoteSession:
        """Replace a record's mutable fields.

        Raises:
            RemoteSessionGoneError: If the record no longer exists remotely
        """
        ...

    @abstractmethod
    async def delete_session(self, remote_id: str) -> None:
        """Delete a record. Deleting a missing record succeeds."""
        ...

    @abstractmethod
    async def list_sessions(self) -> list[RemoteSession]:
        """Full remote set for the authenticated user."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict):
        for key in _ENVELOPE_KEYS:
            if key in body:
                return body[key]
    return body


def _error_reason(body: Any) -> str | None:
    if isinstance(body, dict):
        reason = body.get("error") or body.get("message")
        return str(reason) if reason else None
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return None


class HttpRemoteSessionAPI(RemoteSessionAPI):
    """RemoteSessionAPI over HTTP using aiohttp.

    Example:
        >>> api = HttpRemoteSessionAPI(
        ...     "http://localhost:3000/api",
        ...     credentials=StaticCredentialProvider("token"),
        ... )
        >>> sessions = await api.list_sessions()
        >>> await api.close()
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        timeout_s: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root, e.g. http://localhost:3000/api
            credentials: Provider of the bearer token
            timeout_s: Total timeout per request in seconds
            session: Optional shared aiohttp session (not closed by close())
        """
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> HttpRemoteSessionAPI:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        url = f"{self.base_url}{path}"

        token = await self.credentials.get_token()
        if not token:
            raise AuthenticationRequiredError(url, "no credential available")

        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }

        try:
            async with self._get_session().request(
                method, url, json=body, headers=headers, timeout=self._timeout
            ) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise NetworkUnavailableError(url, e) from e

        try:
            payload = json.loads(text) if text.strip() else None
        except json.JSONDecodeError:
            payload = text

        logger.debug(f"{method} {url} -> {status}")
        return status, payload

    def _raise_for_status(self, method: str, path: str, status: int, payload: Any) -> None:
        if status < 400:
            return

        url = f"{self.base_url}{path}"
        reason = _error_reason(payload)
        if status == 401:
            raise AuthenticationRequiredError(url, reason)
        if status >= 500 or status in _RETRYABLE_4XX:
            raise RemoteServerError(url, status)
        raise ServerRejectedError(url, status, reason)

    def _parse_session(self, path: str, status: int, payload: Any) -> RemoteSession:
        data = _unwrap(payload)
        if not isinstance(data, dict):
            raise ServerRejectedError(f"{self.base_url}{path}", status, "response is not a session")
        try:
            return RemoteSession.from_wire(data)
        except ValueError as e:
            raise ServerRejectedError(f"{self.base_url}{path}", status, str(e)) from e

    async def create_session(self, body: dict[str, Any]) -> RemoteSession:
        status, payload = await self._request("POST", "/sessions", body)
        self._raise_for_status("POST", "/sessions", status, payload)
        return self._parse_session("/sessions", status, payload)

    async def update_session(self, remote_id: str, body: dict[str, Any]) -> RemoteSession:
        path = f"/sessions/{remote_id}"
        status, payload = await self._request("PUT", path, body)
        if status == 404:
            raise RemoteSessionGoneError(remote_id)
        self._raise_for_status("PUT", path, status, payload)
        return self._parse_session(path, status, payload)

    async def delete_session(self, remote_id: str) -> None:
        path = f"/sessions/{remote_id}"
        status, payload = await self._request("DELETE", path)
        if status == 404:
            logger.debug(f"Remote session {remote_id} already deleted")
            return
        self._raise_for_status("DELETE", path, status, payload)

    async def list_sessions(self) -> list[RemoteSession]:
        status, payload = await self._request("GET", "/sessions")
        self._raise_for_status("GET", "/sessions", status, payload)

        items = _unwrap(payload)
        if items is None:
            return []
        if not isinstance(items, list):
            raise ServerRejectedError(f"{self.base_url}/sessions", status, "expected a list")

        sessions = []
        for item in items:
            try:
                sessions.append(RemoteSession.from_wire(item))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Skipping malformed remote session: {e}")
        return sessions
