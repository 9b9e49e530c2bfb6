import asyncio
import json
import sys
import urllib.request
from urllib.error import URLError

import websockets

API = "http://localhost:8000"
WATCHER = sys.argv[1] if len(sys.argv) > 1 else "demo-watcher-1"


async def watch():
    uri = f"ws://localhost:8000/ws/users/{WATCHER}"

    async with websockets.connect(uri) as websocket:
        print(f"Connected as {WATCHER}, listing watched trips...")
        try:
            with urllib.request.urlopen(f"{API}/api/v1/watching/{WATCHER}") as response:
                trips = json.loads(response.read().decode("utf-8"))
                print(f"Watching {len(trips)} trip(s)")
        except URLError as e:
            print(f"GET Error: {e}")
            return

        print("Waiting for updates (Ctrl+C to stop)...")
        while True:
            try:
                msg = await asyncio.wait_for(websocket.recv(), timeout=60.0)
            except asyncio.TimeoutError:
                print("No updates for 60s.")
                break
            data = json.loads(msg)
            kind = data.get("type")
            if kind == "TRACKING_SESSION_UPDATED":
                session = data["session"]
                print(f"Trip to {session['destination_name']}: {session['status']} at {session['current_location']}")
            elif kind == "EMERGENCY":
                print(f"SUCCESS: Received EMERGENCY for session {data['session_id']} at {data['location']}")
            else:
                print("Received:", data)


if __name__ == "__main__":
    asyncio.run(watch())
