"""
Field client entry point.

Wires storage, the API client, the trip store, the offline queue and the sync
engine together, and owns their lifetime.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from minex.app.api.client import ApiClient
from minex.app.api.trip_api import TripAPI
from minex.app.core.config import settings
from minex.app.core.observability import configure_logging
from minex.app.core.reliability import RetryPolicy
from minex.app.db.session import build_engine, build_session_factory, init_db
from minex.app.schemas.trip import Trip
from minex.app.services.connectivity import ConnectivityMonitor
from minex.app.services.credentials import CredentialStore
from minex.app.services.offline_queue import OfflineQueue
from minex.app.services.storage import LocalStorage
from minex.app.services.sync_engine import SyncEngine, SyncReport
from minex.app.services.trip_locking import TripLockRegistry
from minex.app.services.trip_service import TripService
from minex.app.services.trip_store import TripStore

logger = logging.getLogger("minex.app")


class FieldClient:
    """
    One signed-in device.

    Usage:
        async with FieldClient() as client:
            outcome = await client.trips.handle_scan(raw_qr, role)
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        connected: bool = False,
        probe_on_start: bool = True,
    ):
        self.engine = build_engine(database_url)
        self.storage = LocalStorage(build_session_factory(self.engine))
        self.credentials = CredentialStore(self.storage)
        self.api_client = ApiClient(
            self.credentials,
            base_url=base_url,
            transport=transport,
            retry_policy=retry_policy,
            on_session_expired=self._on_session_expired,
        )
        self.trip_api = TripAPI(self.api_client)
        self.store = TripStore()
        self.locks = TripLockRegistry()
        self.queue = OfflineQueue(self.storage)
        self.connectivity = ConnectivityMonitor(connected)
        self.sync_engine = SyncEngine(self.queue, self.trip_api, self.store, self.locks)
        self.trips = TripService(self.trip_api, self.store, self.queue, self.connectivity, self.locks)
        self._probe_on_start = probe_on_start
        self._unsubscribe_reconnect = None

    async def start(self) -> Optional[SyncReport]:
        """
        App start.

        1. Creates the local schema.
        2. Restores the saved user and the provisional trips of the queue.
        3. Probes the API and arms the reconnect trigger.
        4. Runs the app-start sync pass.
        """
        await init_db(self.engine)

        user = await self.credentials.get_user()
        if user is not None:
            self.store.set_user(user)
        await self.trips.restore_offline_trips()

        if self._probe_on_start:
            await self.connectivity.probe(self.api_client.http)
        if self._unsubscribe_reconnect is None:
            self._unsubscribe_reconnect = self.connectivity.on_reconnect(self.sync_engine.sync_offline_trips)

        logger.info("Field client started", extra={"connected": self.connectivity.is_connected})
        if not self.connectivity.is_connected:
            return None
        return await self.sync_engine.sync_offline_trips()

    async def sign_in(self, auth_token: str, refresh_token: Optional[str] = None, user: Optional[Dict[str, Any]] = None) -> None:
        await self.credentials.save_session(auth_token, refresh_token, user)
        self.store.set_user(user or {})

    async def refresh(self, date: Optional[str] = None) -> List[Trip]:
        """Pull-to-refresh: push queued work first, then reload the list."""
        if self.connectivity.is_connected:
            await self.sync_engine.sync_offline_trips()
        return await self.trips.refresh_trips(date=date)

    async def logout(self) -> None:
        # Queued operations are kept; they are user intent, not session state
        await self.credentials.clear()
        self.store.logout()
        logger.info("Logged out")

    async def _on_session_expired(self) -> None:
        logger.warning("Session expired, signing out")
        self.store.logout()

    async def aclose(self) -> None:
        if self._unsubscribe_reconnect is not None:
            self._unsubscribe_reconnect()
            self._unsubscribe_reconnect = None
        await self.api_client.aclose()
        await self.engine.dispose()

    async def __aenter__(self) -> "FieldClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def create_field_client(**kwargs) -> FieldClient:
    """Build a client with logging configured from settings."""
    configure_logging(settings.log_level)
    return FieldClient(**kwargs)
