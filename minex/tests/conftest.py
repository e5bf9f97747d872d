"""
Centralized Test Configuration.

Runs the client stack against an in-process fake of the trip backend
(FastAPI over ASGI) and a fresh in-memory device database per test.
"""

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from minex.app.api.client import ApiClient
from minex.app.api.trip_api import TripAPI
from minex.app.core.reliability import RetryPolicy
from minex.app.db.session import build_session_factory, init_db
from minex.app.services.connectivity import ConnectivityMonitor
from minex.app.services.credentials import CredentialStore
from minex.app.services.offline_queue import OfflineQueue
from minex.app.services.storage import LocalStorage
from minex.app.services.sync_engine import SyncEngine
from minex.app.services.trip_locking import TripLockRegistry
from minex.app.services.trip_service import TripService
from minex.app.services.trip_store import TripStore

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_BASE_URL = "http://test"

JWT_SECRET = "test-secret"
JWT_ALGORITHM = "HS256"
REFRESH_TOKEN = "refresh-1"

LEGACY_STATUS = {"OPEN": "Pending", "COMPLETED_PLANT": "Completed"}


def mint_token(subject: str = "operator-1", version: int = 0) -> str:
    return jwt.encode({"sub": subject, "ver": version}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


class FakeBackend:
    """
    In-memory trip backend.

    Bearer tokens are JWTs; bumping 'token_version' expires every token
    issued before, which is how tests simulate an expired session.
    """

    def __init__(self):
        self.trips: Dict[str, Dict[str, Any]] = {}
        self.counter = 0
        self.legacy = False
        self.token_version = 0
        self.refresh_tokens = {REFRESH_TOKEN}
        self.refresh_calls = 0
        self.list_params: List[Dict[str, str]] = []
        self.app = self._build_app()

    # Seeding

    def seed_trip(self, trip_token: str, vehicle_id: int = 1, status: str = "OPEN", **fields) -> Dict[str, Any]:
        self.counter += 1
        trip = {
            "id": self.counter,
            "tripToken": trip_token,
            "vehicleId": vehicle_id,
            "destination": "Plant A",
            "material": "Ore",
            "departureAt": _now(),
            "arrivalAt": None,
            "weightKg": None,
            "status": status,
            "createdAt": _now(),
            "updatedAt": _now(),
        }
        trip.update(fields)
        self.trips[trip_token] = trip
        return trip

    def expire_sessions(self) -> None:
        self.token_version += 1

    # Wire shapes

    def _wire(self, trip: Dict[str, Any]) -> Dict[str, Any]:
        if not self.legacy:
            return dict(trip)
        return {**trip, "status": LEGACY_STATUS.get(trip["status"], trip["status"])}

    def _single(self, trip: Dict[str, Any], status_code: int = 200) -> JSONResponse:
        if self.legacy:
            return JSONResponse(status_code=status_code, content=self._wire(trip))
        return JSONResponse(status_code=status_code, content={"status": "success", "trip": self._wire(trip)})

    def _authorized(self, request: Request) -> bool:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return False
        try:
            claims = jwt.decode(header[len("Bearer "):], JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return False
        return claims.get("ver") == self.token_version

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        backend = self

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        @app.post("/auth/refresh")
        async def refresh(request: Request):
            backend.refresh_calls += 1
            body = await request.json()
            if body.get("refreshToken") not in backend.refresh_tokens:
                return _error(401, "Invalid refresh token")
            return {"token": mint_token(version=backend.token_version)}

        @app.post("/trip/start")
        async def start_trip(request: Request):
            if not backend._authorized(request):
                return _error(401, "Token expired")
            body = await request.json()
            if not body.get("vehicleId") or not body.get("destination") or not body.get("material"):
                return _error(400, "vehicleId, destination and material are required")

            for trip in backend.trips.values():
                if trip["vehicleId"] == body["vehicleId"] and trip["status"] == "OPEN":
                    return _error(409, "Vehicle already has an open trip", tripToken=trip["tripToken"])

            token = body.get("tripToken") or f"TRP-{backend.counter + 1:03d}"
            trip = backend.seed_trip(
                token,
                vehicle_id=body["vehicleId"],
                destination=body["destination"],
                material=body["material"],
            )
            return backend._single(trip, status_code=201)

        @app.post("/trip/complete")
        async def complete_trip(request: Request):
            if not backend._authorized(request):
                return _error(401, "Token expired")
            body = await request.json()
            trip = backend.trips.get(body.get("tripToken"))
            if trip is None:
                return _error(404, "Trip not found")
            if trip["status"] != "OPEN":
                return _error(409, "Trip already completed")
            trip.update(
                status="COMPLETED_PLANT",
                weightKg=body["weightKg"],
                arrivalAt=_now(),
                updatedAt=_now(),
            )
            return backend._single(trip)

        @app.post("/trip/close-field")
        async def close_trip(request: Request):
            if not backend._authorized(request):
                return _error(401, "Token expired")
            body = await request.json()
            trip = backend.trips.get(body.get("tripToken"))
            if trip is None:
                return _error(404, "Trip not found")
            if trip["status"] != "OPEN":
                return _error(409, "Trip is not open")
            trip.update(status="CLOSED_FIELD", updatedAt=_now())
            return backend._single(trip)

        @app.get("/trip")
        async def list_trips(request: Request):
            if not backend._authorized(request):
                return _error(401, "Token expired")
            backend.list_params.append(dict(request.query_params))
            trips = [backend._wire(t) for t in backend.trips.values()]
            if backend.legacy:
                return trips
            return {"trips": trips}

        @app.get("/trip/{trip_token}")
        async def get_trip(trip_token: str, request: Request):
            if not backend._authorized(request):
                return _error(401, "Token expired")
            trip = backend.trips.get(trip_token)
            if trip is None:
                return _error(404, "Trip not found")
            return backend._single(trip)

        return app


class ScriptedTransport(httpx.AsyncBaseTransport):
    """
    Routes requests to the fake backend, with scripted failures.

    Injected outcomes are consumed per (method, path) in order: an int is
    answered as that HTTP status, an httpx exception class is raised.
    """

    def __init__(self, app: FastAPI):
        self._inner = httpx.ASGITransport(app=app)
        self.requests: List[httpx.Request] = []
        self.failures: Dict[Tuple[str, str], Deque[Any]] = defaultdict(deque)
        self.gate: Optional[asyncio.Event] = None
        self.offline = False

    def fail(self, method: str, path: str, *outcomes: Any) -> None:
        self.failures[(method, path)].extend(outcomes)

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.offline:
            raise httpx.ConnectError("Network is unreachable", request=request)

        scripted = self.failures.get((request.method, request.url.path))
        if scripted:
            outcome = scripted.popleft()
            if isinstance(outcome, int):
                return httpx.Response(outcome, json={"error": f"Injected {outcome}"}, request=request)
            raise outcome("Injected failure", request=request)

        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()


# Device database

@pytest.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def storage(session_factory):
    return LocalStorage(session_factory)


@pytest.fixture
def credentials(storage):
    return CredentialStore(storage)


@pytest.fixture
def queue(storage):
    return OfflineQueue(storage)


# Remote side

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transport(backend):
    return ScriptedTransport(backend.app)


@pytest.fixture
def sleeps():
    """Backoff delays requested by the retry policy, in seconds."""
    return []


@pytest.fixture
def retry_policy(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return RetryPolicy(sleep=fake_sleep)


@pytest.fixture
async def signed_in(credentials):
    await credentials.save_session(
        mint_token(), REFRESH_TOKEN, {"id": 1, "name": "Budi", "role": "operator"}
    )


@pytest.fixture
async def api_client(credentials, transport, retry_policy, signed_in):
    client = ApiClient(
        credentials,
        base_url=TEST_BASE_URL,
        transport=transport,
        retry_policy=retry_policy,
    )
    yield client
    await client.aclose()


@pytest.fixture
def trip_api(api_client):
    return TripAPI(api_client)


# Client state

@pytest.fixture
def store():
    return TripStore()


@pytest.fixture
def locks():
    return TripLockRegistry()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(connected=True)


@pytest.fixture
def sync_engine(queue, trip_api, store, locks):
    return SyncEngine(queue, trip_api, store, locks)


@pytest.fixture
def trip_service(trip_api, store, queue, connectivity, locks):
    return TripService(trip_api, store, queue, connectivity, locks)
