"""Pub/sub (WebSocket) manager tests.

Learn: the fake socket sends `ready` as soon as it is dialed and, with
auto_ack on, answers every request itself. Tests that need a silent or
failing server flip `auto_ack` / `ignore_types` / `errors` on it.
"""

import asyncio

import httpx
import pytest

from bosbase import (
    AckTimeoutError,
    BosBase,
    ClientResponseError,
    ConnectionClosedError,
    ConnectionNotEstablishedError,
    PublishAck,
    PubSubMessage,
)
from bosbase.pubsub import service as pubsub_service
from tests.conftest import make_token, wait_until


@pytest.mark.asyncio
async def test_subscribe_then_publish_frames(client, sockets):
    """Subscribe sends one acked frame, publish returns the server's ack."""
    received = []
    await client.pubsub.subscribe("chat/general", received.append)

    ack = await client.pubsub.publish("chat/general", {"text": "hi"})

    socket = sockets.last
    assert socket.sent == [
        {"type": "subscribe", "topic": "chat/general", "requestId": "1"},
        {"type": "publish", "topic": "chat/general", "data": {"text": "hi"}, "requestId": "2"},
    ]
    assert ack == PublishAck(id="m1", topic="chat/general", created="2024-01-01T00:00:00Z")
    assert client.pubsub.client_id == "p1"
    assert client.pubsub._pending == {}


@pytest.mark.asyncio
async def test_message_frames_reach_topic_listeners(client, sockets):
    received, other = [], []
    await client.pubsub.subscribe("chat/general", received.append)
    await client.pubsub.subscribe("chat/random", other.append)

    sockets.last.push(
        {
            "type": "message",
            "topic": "chat/general",
            "id": "m7",
            "created": "2024-01-01T00:00:00Z",
            "data": {"text": "hello"},
        }
    )
    await wait_until(lambda: received)

    assert received == [
        PubSubMessage(id="m7", topic="chat/general", created="2024-01-01T00:00:00Z", data={"text": "hello"})
    ]
    assert other == []


@pytest.mark.asyncio
async def test_second_listener_does_not_resubscribe(client, sockets):
    first, second = [], []
    unsubscribe_first = await client.pubsub.subscribe("chat/general", first.append)
    unsubscribe_second = await client.pubsub.subscribe("chat/general", second.append)
    assert len(sockets.last.sent_of_type("subscribe")) == 1

    await unsubscribe_first()
    assert sockets.last.sent_of_type("unsubscribe") == []
    assert client.pubsub.is_connected

    await unsubscribe_second()
    assert sockets.last.sent_of_type("unsubscribe") == [
        {"type": "unsubscribe", "topic": "chat/general", "requestId": "2"}
    ]
    assert not client.pubsub.is_connected
    assert sockets.last.closed


@pytest.mark.asyncio
async def test_unsubscribe_handle_is_idempotent(client, sockets):
    unsubscribe = await client.pubsub.subscribe("a", lambda m: None)
    await client.pubsub.subscribe("b", lambda m: None)

    await unsubscribe()
    await unsubscribe()

    assert len(sockets.last.sent_of_type("unsubscribe")) == 1
    assert client.pubsub.has_subscriptions()
    assert client.pubsub.is_connected


@pytest.mark.asyncio
async def test_publish_ack_timeout_clears_pending(client, sockets):
    client.pubsub.ack_timeout = 0.05
    sockets.auto_ack = False

    with pytest.raises(AckTimeoutError) as exc_info:
        await client.pubsub.publish("chat/general", {"text": "hi"})

    assert exc_info.value.message == "missing publish ack"
    assert client.pubsub._pending == {}


@pytest.mark.asyncio
async def test_late_ack_after_timeout_is_ignored(client, sockets):
    client.pubsub.ack_timeout = 0.05
    sockets.auto_ack = False

    with pytest.raises(AckTimeoutError):
        await client.pubsub.publish("chat/general")

    request_id = sockets.last.sent_of_type("publish")[0]["requestId"]
    sockets.last.push({"type": "published", "requestId": request_id, "id": "late"})
    await asyncio.sleep(0.02)
    assert client.pubsub._pending == {}
    assert client.pubsub.is_connected


@pytest.mark.asyncio
async def test_subscribe_ack_timeout_drops_listener(client, sockets):
    await client.pubsub.ping()
    client.pubsub.ack_timeout = 0.05
    sockets.last.ignore_types = {"subscribe"}

    with pytest.raises(AckTimeoutError):
        await client.pubsub.subscribe("chat/general", lambda m: None)

    assert not client.pubsub.has_subscriptions()
    assert client.pubsub._pending == {}


@pytest.mark.asyncio
async def test_error_frame_rejects_request(client, sockets):
    await client.pubsub.ping()
    sockets.last.errors["publish"] = "forbidden topic"

    with pytest.raises(ClientResponseError) as exc_info:
        await client.pubsub.publish("secret", {"x": 1})

    assert exc_info.value.message == "forbidden topic"
    assert not isinstance(exc_info.value, AckTimeoutError)
    assert client.pubsub._pending == {}


@pytest.mark.asyncio
async def test_disconnect_fails_pending_requests(client, sockets):
    sockets.auto_ack = False
    task = asyncio.create_task(client.pubsub.publish("chat/general"))
    await wait_until(lambda: client.pubsub._pending)

    await client.pubsub.disconnect()

    with pytest.raises(ConnectionClosedError):
        await task
    assert client.pubsub._pending == {}


@pytest.mark.asyncio
async def test_reconnect_replays_only_live_topics(client, sockets):
    """After a drop, the next publish dials again and the new socket replays subscriptions."""
    await client.pubsub.subscribe("a", lambda m: None)
    unsubscribe_b = await client.pubsub.subscribe("b", lambda m: None)
    await unsubscribe_b()
    first = sockets.last

    first.drop()
    await wait_until(lambda: not client.pubsub.is_connected)
    assert client.pubsub.has_subscriptions()

    await client.pubsub.publish("a", {"n": 1})

    assert len(sockets.sockets) == 2
    second = sockets.last
    await wait_until(lambda: second.sent_of_type("subscribe"))
    assert [frame["topic"] for frame in second.sent_of_type("subscribe")] == ["a"]
    assert client.pubsub.client_id == "p2"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_socket(client, sockets):
    await asyncio.gather(
        client.pubsub.publish("a"),
        client.pubsub.publish("b"),
        client.pubsub.subscribe("c", lambda m: None),
    )
    assert len(sockets.sockets) == 1


@pytest.mark.asyncio
async def test_unsubscribe_all_sends_bare_frame(client, sockets):
    await client.pubsub.subscribe("a", lambda m: None)
    await client.pubsub.subscribe("b", lambda m: None)
    socket = sockets.last

    await client.pubsub.unsubscribe()

    assert socket.sent[-1] == {"type": "unsubscribe"}
    assert not client.pubsub.has_subscriptions()
    assert not client.pubsub.is_connected


@pytest.mark.asyncio
async def test_unsubscribe_topic(client, sockets):
    await client.pubsub.subscribe("a", lambda m: None)
    await client.pubsub.subscribe("a", lambda m: None)
    await client.pubsub.subscribe("b", lambda m: None)

    await client.pubsub.unsubscribe("a")

    assert [frame["topic"] for frame in sockets.last.sent_of_type("unsubscribe")] == ["a"]
    assert client.pubsub.is_connected


@pytest.mark.asyncio
async def test_listener_may_unsubscribe_itself(client, sockets):
    received = []
    handle = {}

    async def once(message):
        received.append(message.data)
        await handle["unsubscribe"]()

    handle["unsubscribe"] = await client.pubsub.subscribe("a", once)
    socket = sockets.last
    socket.push({"type": "message", "topic": "a", "data": 1})
    socket.push({"type": "message", "topic": "a", "data": 2})

    await wait_until(lambda: not client.pubsub.is_connected)
    assert received == [1]
    assert [frame["topic"] for frame in socket.sent_of_type("unsubscribe")] == ["a"]


@pytest.mark.asyncio
async def test_failing_listener_is_isolated(client, sockets):
    received = []

    def broken(message):
        raise RuntimeError("boom")

    await client.pubsub.subscribe("a", broken)
    await client.pubsub.subscribe("a", received.append)
    sockets.last.push({"type": "message", "topic": "a", "data": 1})
    sockets.last.push({"type": "message", "topic": "a", "data": 2})

    await wait_until(lambda: len(received) == 2)
    assert [message.data for message in received] == [1, 2]
    assert client.pubsub.is_connected


@pytest.mark.asyncio
async def test_garbage_frames_are_skipped(client, sockets):
    received = []
    await client.pubsub.subscribe("a", received.append)
    sockets.last._incoming.put_nowait("not json")
    sockets.last.push({"type": "mystery"})
    sockets.last.push({"type": "message", "topic": "a", "data": "ok"})

    await wait_until(lambda: received)
    assert received[0].data == "ok"


@pytest.mark.asyncio
async def test_ping(client, sockets):
    pong = await client.pubsub.ping()
    assert pong == {"type": "pong", "requestId": "1"}


@pytest.mark.asyncio
async def test_ready_timeout(client, sockets):
    client.pubsub.ready_timeout = 0.05
    sockets.send_ready = False
    client.auth_store.save(make_token())

    with pytest.raises(ConnectionNotEstablishedError) as exc_info:
        await client.pubsub.publish("a")

    assert exc_info.value.is_abort
    assert "token" not in exc_info.value.url
    assert sockets.last.closed
    assert not client.pubsub.is_connected


@pytest.mark.asyncio
async def test_dial_failure(client, sockets):
    sockets.fail_with = OSError("connection refused")

    with pytest.raises(ClientResponseError) as exc_info:
        await client.pubsub.publish("a")

    assert isinstance(exc_info.value.original_error, OSError)
    assert exc_info.value.message == "connection refused"
    assert not client.pubsub.is_connected


@pytest.mark.asyncio
async def test_socket_url_uses_ws_scheme_and_token(sockets, test_settings):
    token = make_token()
    http = httpx.AsyncClient()
    pb = BosBase("https://example.com/", http_client=http, settings=test_settings, pubsub_connect=sockets)
    pb.auth_store.save(token)
    try:
        await pb.pubsub.ping()
        assert sockets.last.url == f"wss://example.com/api/pubsub?token={token}"
    finally:
        await pb.close()
        await http.aclose()


@pytest.mark.asyncio
async def test_plain_http_maps_to_ws(client, sockets):
    await client.pubsub.ping()
    assert sockets.last.url == "ws://test/api/pubsub"


@pytest.mark.asyncio
async def test_publish_rejects_empty_topic(client, sockets):
    with pytest.raises(ValueError):
        await client.pubsub.publish("")
    with pytest.raises(ValueError):
        await client.pubsub.subscribe("a", None)
    assert sockets.sockets == []


@pytest.mark.asyncio
async def test_listener_joining_a_pending_subscribe_waits_for_its_ack(client, sockets):
    await client.pubsub.ping()
    socket = sockets.last
    socket.ignore_types = {"subscribe"}

    first = asyncio.create_task(client.pubsub.subscribe("t", lambda m: None))
    await wait_until(lambda: socket.sent_of_type("subscribe"))
    second = asyncio.create_task(client.pubsub.subscribe("t", lambda m: None))
    await asyncio.sleep(0.02)
    assert not first.done()
    assert not second.done()

    request_id = socket.sent_of_type("subscribe")[0]["requestId"]
    socket.push({"type": "subscribed", "requestId": request_id})
    await first
    await second
    assert len(socket.sent_of_type("subscribe")) == 1

    # both listeners survive a reconnect, so the topic is replayed
    socket.drop()
    await wait_until(lambda: not client.pubsub.is_connected)
    await client.pubsub.ping()
    replacement = sockets.last
    await wait_until(lambda: replacement.sent_of_type("subscribe"))
    assert [frame["topic"] for frame in replacement.sent_of_type("subscribe")] == ["t"]


@pytest.mark.asyncio
async def test_failed_first_subscribe_fails_every_waiting_listener(client, sockets):
    await client.pubsub.ping()
    client.pubsub.ack_timeout = 0.05
    socket = sockets.last
    socket.ignore_types = {"subscribe"}

    first = asyncio.create_task(client.pubsub.subscribe("t", lambda m: None))
    await wait_until(lambda: socket.sent_of_type("subscribe"))
    second = asyncio.create_task(client.pubsub.subscribe("t", lambda m: None))

    with pytest.raises(AckTimeoutError):
        await first
    with pytest.raises(AckTimeoutError):
        await second
    assert not client.pubsub.has_subscriptions()
    assert client.pubsub._inflight == {}

    # the next listener starts over with its own subscribe request
    socket.ignore_types = set()
    await client.pubsub.subscribe("t", lambda m: None)
    assert len(socket.sent_of_type("subscribe")) == 2


def test_default_request_ids_survive_a_clock_step_back(monkeypatch):
    clock = iter([1_002, 1_001])
    next_id = pubsub_service._timestamp_request_ids()
    monkeypatch.setattr(pubsub_service.time, "time_ns", lambda: next(clock))

    assert next_id() != next_id()


@pytest.mark.asyncio
async def test_duplicate_request_id_is_refused(backend, sockets, test_settings):
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    pb = BosBase(
        "http://test",
        http_client=http,
        settings=test_settings,
        pubsub_connect=sockets,
        pubsub_request_id_factory=lambda: "same",
    )
    sockets.auto_ack = False
    try:
        first = asyncio.create_task(pb.pubsub.publish("a"))
        await wait_until(lambda: pb.pubsub._pending)

        with pytest.raises(ValueError):
            await pb.pubsub.publish("b")

        sockets.last.push({"type": "published", "requestId": "same", "id": "m1"})
        ack = await first
        assert ack.id == "m1"
    finally:
        await pb.close()
        await http.aclose()
