"""Test fixtures — an in-process fake backend, no network.

Learn: two fakes stand in for the server:

1. FakeBackend is an httpx.MockTransport handler. REST routes return
   canned JSON; GET /api/realtime returns an EventStream the test can
   push SSE text into (and close, to simulate a dropped stream);
   POST /api/realtime records every subscription-sync body.
2. FakeSocket replaces the websockets connection. Frames the client
   sends are recorded as dicts; the test pushes server frames in. With
   auto_ack on, it answers publish/subscribe/unsubscribe/ping itself.
"""

import asyncio
import itertools
import json
import time
from typing import Any, Callable, Optional

import httpx
import jwt
import pytest
import pytest_asyncio

from bosbase import BosBase, Settings


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until `predicate()` is true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.005)


def make_token(expires_in: float = 3600, **claims: Any) -> str:
    payload = {"exp": int(time.time() + expires_in), **claims}
    return jwt.encode(payload, "test-secret", algorithm="HS256")


# ─── SSE ──────────────────────────────────────────────────


class EventStream(httpx.AsyncByteStream):
    """A response body the test feeds chunk by chunk."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, text: str) -> None:
        self._queue.put_nowait(text.encode())

    def send_event(self, event: str, data: Any = None, id: str = "") -> None:
        lines = [f"event: {event}"]
        if id:
            lines.append(f"id: {id}")
        if data is not None:
            lines.append("data: " + (data if isinstance(data, str) else json.dumps(data)))
        self.push("\n".join(lines) + "\n\n")

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def __aiter__(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeBackend:
    def __init__(self):
        self.streams: list[EventStream] = []
        self.stream_requests: list[httpx.Request] = []
        self.sync_requests: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Any] = {}
        self.realtime_status = 200
        self.sync_status = 204
        # raised (once) by the next GET /api/realtime instead of answering
        self.stream_error: Optional[Exception] = None

    def route(self, method: str, path: str, response: Any) -> None:
        """Register a canned response: an httpx.Response, a JSON-able value, or a callable."""
        self.routes[(method, path)] = response

    async def stream(self, index: int) -> EventStream:
        await wait_until(lambda: len(self.streams) > index)
        return self.streams[index]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/realtime" and request.method == "GET":
            self.stream_requests.append(request)
            if self.stream_error is not None:
                error, self.stream_error = self.stream_error, None
                raise error
            if self.realtime_status >= 400:
                return httpx.Response(self.realtime_status, json={"message": "nope"})
            stream = EventStream()
            self.streams.append(stream)
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, stream=stream
            )

        if path == "/api/realtime" and request.method == "POST":
            self.sync_requests.append(json.loads(request.content))
            return httpx.Response(self.sync_status)

        response = self.routes.get((request.method, path))
        if response is None:
            return httpx.Response(404, json={"code": 404, "message": "Not found."})
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)


# ─── WebSocket ────────────────────────────────────────────


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, url: str, *, auto_ack: bool = True, client_id: str = "p1", ready: bool = True):
        self.url = url
        self.auto_ack = auto_ack
        self.ignore_types: set[str] = set()
        self.errors: dict[str, str] = {}  # frame type → error message
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        if ready:
            self.push({"type": "ready", "clientId": client_id})

    def push(self, frame: dict) -> None:
        self._incoming.put_nowait(json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server going away."""
        self._incoming.put_nowait(None)

    def sent_of_type(self, frame_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame.get("type") == frame_type]

    async def send(self, text: str) -> None:
        frame = json.loads(text)
        self.sent.append(frame)
        if not self.auto_ack or "requestId" not in frame:
            return
        frame_type = frame["type"]
        if frame_type in self.ignore_types:
            return
        if frame_type in self.errors:
            self.push({"type": "error", "requestId": frame["requestId"], "message": self.errors[frame_type]})
            return
        ack_type = {
            "publish": "published",
            "subscribe": "subscribed",
            "unsubscribe": "unsubscribed",
            "ping": "pong",
        }[frame_type]
        ack = {"type": ack_type, "requestId": frame["requestId"]}
        if frame_type == "publish":
            ack.update(id="m1", topic=frame["topic"], created="2024-01-01T00:00:00Z")
        self.push(ack)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class SocketFactory:
    """The `connect` callable handed to PubSubService."""

    def __init__(self):
        self.sockets: list[FakeSocket] = []
        self.auto_ack = True
        self.send_ready = True
        self.fail_with: Optional[Exception] = None

    async def __call__(self, url: str) -> FakeSocket:
        if self.fail_with is not None:
            raise self.fail_with
        socket = FakeSocket(
            url,
            auto_ack=self.auto_ack,
            client_id=f"p{len(self.sockets) + 1}",
            ready=self.send_ready,
        )
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


# ─── Fixtures ─────────────────────────────────────────────


@pytest.fixture()
def test_settings():
    return Settings(
        base_url="http://test",
        realtime_connect_timeout=1.0,
        realtime_backoff=[0.01, 0.02],
        pubsub_ack_timeout=1.0,
        pubsub_ready_timeout=1.0,
        oauth2_timeout=1.0,
    )


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def sockets():
    return SocketFactory()


@pytest_asyncio.fixture()
async def client(backend, sockets, test_settings):
    """A BosBase wired to the fake backend and fake sockets.

    Pub/sub request ids are "1", "2", ... so frames can be asserted literally.
    """
    counter = itertools.count(1)
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    pb = BosBase(
        "http://test",
        http_client=http,
        settings=test_settings,
        pubsub_connect=sockets,
        pubsub_request_id_factory=lambda: str(next(counter)),
    )
    yield pb
    await pb.close()
    await http.aclose()
