"""
Drive a demo "Look After Me" trip against a running API.

Seeds three profiles straight into the configured database (profile CRUD
is not part of the API), then walks one trip over HTTP: position fixes,
start, status, a few moves, and either a check-in or an emergency.

    python scripts/simulate_trip.py            # arrive safely
    python scripts/simulate_trip.py --panic    # raise an emergency midway
"""

import argparse
import json
import time
import urllib.request
from datetime import datetime, timedelta, timezone
from urllib.error import HTTPError

from guardian.database import models  # noqa: F401  (registers tables)
from guardian.database.session import Base, engine
from guardian.database.store import TrackingStore

API_URL = "http://localhost:8000/api/v1"

OWNER = "demo-owner"
WATCHERS = ["demo-watcher-1", "demo-watcher-2"]

# Manhattan walk: City Hall → Union Square
ROUTE = [
    (40.7128, -74.0060),
    (40.7180, -74.0020),
    (40.7245, -73.9975),
    (40.7310, -73.9925),
    (40.7359, -73.9911),
]


def call(endpoint, method="GET", payload=None):
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(f"{API_URL}{endpoint}", data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req) as response:
            return json.loads(response.read().decode("utf-8"))
    except HTTPError as e:
        body = json.loads(e.read().decode("utf-8") or "{}")
        print(f"   {method} {endpoint} → {e.code}: {body.get('message', body)}")
        return None


def push_position(lat, lon):
    return call(f"/users/{OWNER}/position", "PUT", {"latitude": lat, "longitude": lon, "accuracy_m": 8.0})


def seed_profiles():
    Base.metadata.create_all(bind=engine)
    store = TrackingStore()
    store.upsert_profile(OWNER, full_name="Demo Owner")
    store.upsert_profile(WATCHERS[0], full_name="Wendy Watcher")
    store.upsert_profile(WATCHERS[1], display_name="walt")


def main():
    parser = argparse.ArgumentParser(description="Simulate a watched trip")
    parser.add_argument("--panic", action="store_true", help="trigger an emergency instead of checking in")
    parser.add_argument("--step", type=float, default=6.0, help="seconds between moves")
    args = parser.parse_args()

    print("🚶 --- Guardian Trip Simulator ---")

    print("1. Seeding demo profiles...")
    seed_profiles()

    print("2. Sending first GPS fix...")
    push_position(*ROUTE[0])

    print("3. Starting trip to Union Square...")
    eta = datetime.now(tz=timezone.utc) + timedelta(minutes=25)
    session = call("/sessions", "POST", {
        "owner_id": OWNER,
        "destination_name": "Union Square",
        "watcher_ids": WATCHERS,
        "estimated_arrival": eta.isoformat(),
        "destination_location": {"latitude": ROUTE[-1][0], "longitude": ROUTE[-1][1]},
        "metadata": {"outfit_description": "Blue raincoat", "might_be_late": False},
    })
    if session is None:
        session = call(f"/sessions/active?owner_id={OWNER}")
        if session is None:
            print("   Could not start or find a trip, giving up.")
            return
        print("   Reusing the trip that is already active.")
    session_id = session["id"]
    print(f"   Session ID: {session_id}")

    print("4. Walking the route...")
    for i, (lat, lon) in enumerate(ROUTE[1:], start=1):
        time.sleep(args.step)
        push_position(lat, lon)
        status = call(f"/sessions/active/status?owner_id={OWNER}")
        if status:
            clock = status["clock"]
            print(f"   [{i}] {lat:.4f}, {lon:.4f}  elapsed {clock['elapsed']}  "
                  f"remaining {clock['remaining']}  {status['distance_to_destination_m']} m to go")

        if args.panic and i == len(ROUTE) // 2:
            print("5. 🚨 Raising emergency...")
            alert = call(f"/sessions/{session_id}/emergency", "POST", {"owner_id": OWNER})
            if alert:
                print(f"   Alert {alert['id']} at {alert['location']}")
            print("   Location keeps streaming to watchers during the emergency.")

    if not args.panic:
        print("5. Checking in safely...")
        done = call(f"/sessions/{session_id}/check-in", "POST", {"owner_id": OWNER})
        if done:
            print(f"   Trip {done['status']} at {done['completed_at']}")

    print("\n✅ Simulation Complete!")
    print(f"Run verify_ws.py with a watcher id (e.g. {WATCHERS[0]}) in another terminal to watch live updates.")


if __name__ == "__main__":
    main()
