#!/usr/bin/env python3
"""
Pub/sub chat — two clients talking over the WebSocket channel.

Alice and Bob each open their own socket. Bob subscribes to a topic,
Alice publishes a few lines, Bob prints what arrives.
Run with: python examples/pubsub_chat.py [topic]

Requires: pip install -e .
Backend must be running: http://127.0.0.1:8090
"""

import asyncio
import sys

from _common import create_client


async def main(topic: str) -> None:
    alice = await create_client()
    bob = await create_client()
    inbox: asyncio.Queue = asyncio.Queue()

    async with alice, bob:
        unsubscribe = await bob.pubsub.subscribe(topic, inbox.put_nowait)
        print(f"\nBob joined {topic} (client {bob.pubsub.client_id})")

        lines = ["hi bob", "this goes over the websocket", "bye"]
        for line in lines:
            ack = await alice.pubsub.publish(topic, {"from": "alice", "text": line})
            print(f"Alice → {line!r}  (ack {ack.id})")

        for _ in lines:
            message = await asyncio.wait_for(inbox.get(), timeout=10)
            print(f"Bob ← {message.data['text']!r}  at {message.created}")

        await unsubscribe()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "chat/general"))
