#!/usr/bin/env python3
"""
BosBase Quickstart — records plus a live realtime feed in one script.

Subscribes to every change in a collection, then creates, updates and
deletes a record so the three events come back over the SSE stream.
Run with: python examples/quickstart.py [collection]

Requires: pip install -e .
Backend must be running: http://127.0.0.1:8090
"""

import asyncio
import sys

from _common import create_client


async def main(collection: str) -> None:
    client = await create_client()
    events: asyncio.Queue = asyncio.Queue()

    async with client:
        posts = client.collection(collection)

        # ── Subscribe ─────────────────────────────────────────────────
        print(f"\n1. Subscribing to {collection}/* ...")
        unsubscribe = await posts.subscribe("*", events.put_nowait)
        print(f"   Realtime client id: {client.realtime.client_id}")

        # ── Create / update / delete ──────────────────────────────────
        print("\n2. Creating a record...")
        record = await posts.create({"title": "Hello from the quickstart"})
        print(f"   Record: {record['id']}")

        print("\n3. Updating it...")
        await posts.update(record["id"], {"title": "Hello again"})

        print("\n4. Deleting it...")
        await posts.delete(record["id"])

        # ── Watch the events arrive ───────────────────────────────────
        print("\n5. Realtime events:")
        for _ in range(3):
            event = await asyncio.wait_for(events.get(), timeout=10)
            print(f"   {event.get('action'):<7} {event.get('record', {}).get('id')}")

        await unsubscribe()
        print("\nDone. Stream closed:", not client.realtime.is_connected)


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "posts"))
