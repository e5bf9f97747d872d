"""
Connectivity tracking.

The platform's network bridge reports state changes here; every transition
to connected fires the reconnect listeners (the sync trigger).
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import httpx

from minex.app.core.config import settings
from minex.app.core.constants import HEALTH_CHECK_PATHS

logger = logging.getLogger("minex.connectivity")

ReconnectListener = Callable[[], Awaitable[Any]]


@dataclass
class ApiConnectionStatus:
    connected: bool
    error: Optional[str] = None


async def check_api_connection(http: httpx.AsyncClient) -> ApiConnectionStatus:
    """
    Check whether the API server is reachable.

    Tries the health endpoints first, then the base URL. Any HTTP answer,
    even an error status, means the server is reachable.
    """
    for path in HEALTH_CHECK_PATHS:
        try:
            await http.get(path or "/", timeout=settings.health_check_timeout_seconds)
            return ApiConnectionStatus(connected=True)
        except httpx.TransportError as e:
            logger.debug("Health endpoint unreachable", extra={"path": path, "error": type(e).__name__})
            continue

    return ApiConnectionStatus(connected=False, error="Cannot connect to API server")


class ConnectivityMonitor:

    def __init__(self, connected: bool = False):
        self._connected = connected
        self._listeners: List[ReconnectListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_reconnect(self, listener: ReconnectListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_connected(self, connected: bool) -> None:
        was_connected = self._connected
        self._connected = connected
        if connected == was_connected:
            return

        logger.info("Connectivity changed", extra={"connected": connected})
        if not connected:
            return
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception:
                logger.exception("Reconnect listener failed")

    async def probe(self, http: httpx.AsyncClient) -> bool:
        """Refresh the state from an actual reachability check."""
        status = await check_api_connection(http)
        await self.set_connected(status.connected)
        return status.connected
