import asyncio
import json
import os
import sys
import tempfile

from minex.app.main import create_field_client

QR_PAYLOAD = {"vehicleId": 7, "destination": "Plant A", "material": "Ore"}


def build_client(database_url):
    # No server needed: the client stays offline for the whole run
    return create_field_client(database_url=database_url, probe_on_start=False)


async def run_verification(database_url):
    # 1. First run: start and complete a trip while offline
    print("\n--- [Step 1] Starting Client (Offline) ---")
    client = build_client(database_url)
    await client.start()
    try:
        print("\n--- [Step 2] Scanning Vehicle QR ---")
        outcome = await client.trips.handle_scan(json.dumps(QR_PAYLOAD), "operator")
        token = outcome.trip.trip_token
        print(f"✅ {outcome.kind.value}: {token} ({outcome.message})")

        print("\n--- [Step 3] Entering Weight ---")
        outcome = await client.trips.complete_trip(token, 13200)
        print(f"✅ {outcome.kind.value}: {outcome.message}")

        queued = await client.queue.read_all()
        print(f"Queue holds {len(queued)} operation(s)")
    finally:
        print("\n--- [Step 4] Stopping Client ---")
        await client.aclose()

    # 2. Second run: everything must come back from device storage
    print("\n--- [Step 5] Restarting Client (Verification) ---")
    restarted = build_client(database_url)
    await restarted.start()
    try:
        ops = await restarted.queue.read_all()
        trip = restarted.store.get_trip_by_token(token)

        if len(ops) == len(queued) and trip is not None and trip.completion_pending:
            print("✅ Queue and provisional trip persisted")
            print(trip.to_storage())
            return True

        print(f"❌ Persistence Issue: {len(ops)} queued, trip={trip}")
        return False
    finally:
        print("\n--- [Step 6] Stopping Client ---")
        await restarted.aclose()


if __name__ == "__main__":
    with tempfile.TemporaryDirectory() as tmp:
        url = f"sqlite+aiosqlite:///{os.path.join(tmp, 'device.db')}"
        ok = asyncio.run(run_verification(url))
    sys.exit(0 if ok else 1)
