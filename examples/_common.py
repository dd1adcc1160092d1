"""
Shared helpers for BosBase examples.

Handles the health check and (optional) password login so each example
can focus on its specific workflow.
"""

import os
import sys

from bosbase import BosBase, ClientResponseError

BASE = os.environ.get("BOSBASE_BASE_URL", "http://127.0.0.1:8090")


async def check_backend(client: BosBase) -> None:
    """Verify the backend is reachable and healthy."""
    try:
        health = await client.health.check()
    except ClientResponseError as e:
        print(f"ERROR: Backend not reachable at {BASE} ({e.message or e.status})")
        sys.exit(1)
    print(f"Backend health: {health.get('message', 'ok')}")


async def maybe_login(client: BosBase) -> None:
    """Log in with BOSBASE_EMAIL / BOSBASE_PASSWORD when both are set."""
    email = os.environ.get("BOSBASE_EMAIL")
    password = os.environ.get("BOSBASE_PASSWORD")
    if not (email and password):
        print("  Auth:     (anonymous)")
        return
    collection = os.environ.get("BOSBASE_AUTH_COLLECTION", "users")
    await client.collection(collection).auth_with_password(email, password)
    print(f"  Auth:     ✓ ({email})")


async def create_client() -> BosBase:
    """Check backend, authenticate if configured, and return a client."""
    client = BosBase(BASE)
    await check_backend(client)
    await maybe_login(client)
    return client
