"""
Connectivity monitoring.

Tracks whether the remote store is reachable and notifies subscribers
on online/offline transitions. State can be pushed in by the host
(set_online) or discovered by checking DNS resolution of a known host.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import socket
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None] | None]


class ConnectivityMonitor:
    """Binary reachability signal with change notifications.

    Listeners are called with the new state on every transition, never
    when the state is re-asserted unchanged.
    """

    def __init__(
        self,
        initially_online: bool = True,
        check_host: str = "localhost",
        check_port: int = 443,
        timeout_s: float = 5.0,
    ):
        """Initialize the monitor.

        Args:
            initially_online: Starting state before any check
            check_host: Host resolved by check_now()
            check_port: Port passed to the resolver
            timeout_s: Check timeout in seconds
        """
        self.check_host = check_host
        self.check_port = check_port
        self.timeout_s = timeout_s
        self._online = initially_online
        self._listeners: list[ConnectivityListener] = []
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def is_online(self) -> bool:
        """Whether the remote store is currently considered reachable."""
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_online(self, online: bool) -> bool:
        """Update reachability and notify listeners on a transition.

        Returns:
            True if the state changed
        """
        if online == self._online:
            return False

        self._online = online
        logger.info("Connectivity restored" if online else "Connectivity lost")

        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connectivity listener failed")
        return True

    async def check_now(self) -> bool:
        """Check reachability by resolving the configured host.

        Returns:
            True if online, False otherwise
        """
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.getaddrinfo(self.check_host, self.check_port, type=socket.SOCK_STREAM),
                timeout=self.timeout_s,
            )
            online = True
        except (OSError, TimeoutError) as e:
            logger.debug(f"Connectivity check for {self.check_host} failed: {e}")
            online = False

        await self.set_online(online)
        return online

    async def start_polling(self, interval_s: float) -> None:
        """Check in the background every interval_s seconds."""
        if self._poll_task is not None:
            return

        async def poll_loop() -> None:
            while True:
                try:
                    await self.check_now()
                    await asyncio.sleep(interval_s)
                except asyncio.CancelledError:
                    break

        self._poll_task = asyncio.create_task(poll_loop())

    async def stop_polling(self) -> None:
        """Stop background checks."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
