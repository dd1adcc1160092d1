"""Pub/sub (WebSocket) manager — request/ack correlation over one socket.

Learn: every control frame we send (publish, subscribe, unsubscribe,
ping) carries a fresh requestId. The server answers with an ack frame
echoing that id, or an `error` frame. Each in-flight request is a
future in `_pending` plus a timer; whichever of ack, error, timeout or
teardown comes first resolves it, and the entry is removed right then.

Unlike realtime, reconnection here is demand-driven: a dropped socket
stays down until the next publish()/subscribe() dials again. The new
socket's `ready` frame replays the topics the server had acknowledged
before, so listeners survive the reconnect.
"""

import asyncio
import contextlib
import itertools
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import structlog
import websockets

from bosbase.errors import (
    AckTimeoutError,
    ClientResponseError,
    ConnectionClosedError,
    ConnectionNotEstablishedError,
)
from bosbase.events.types import (
    ACK_TYPES,
    ERROR,
    MESSAGE,
    PING,
    PUBLISH,
    PUBSUB_PATH,
    READY,
    SUBSCRIBE,
    UNSUBSCRIBE,
)
from bosbase.listeners import call_listener
from bosbase.schemas.pubsub import PublishAck, PubSubMessage

if TYPE_CHECKING:
    from bosbase.client import BosBase

logger = structlog.get_logger()

MessageListener = Callable[[PubSubMessage], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], Awaitable[None]]
Connect = Callable[[str], Awaitable[Any]]


@dataclass
class _Listener:
    id: int
    callback: MessageListener


@dataclass
class _PendingRequest:
    future: asyncio.Future
    timer: asyncio.TimerHandle


def _timestamp_request_ids() -> Callable[[], str]:
    counter = itertools.count(1)

    def next_id() -> str:
        # the counter alone keeps ids unique if the wall clock steps back
        return f"{time.time_ns()}-{next(counter)}"

    return next_id


class PubSubService:
    """Publish and subscribe to topics over the /api/pubsub WebSocket."""

    def __init__(
        self,
        client: "BosBase",
        *,
        connect: Optional[Connect] = None,
        request_id_factory: Optional[Callable[[], str]] = None,
        ack_timeout: float = 10.0,
        ready_timeout: float = 10.0,
    ):
        self.client = client
        self.ack_timeout = ack_timeout
        self.ready_timeout = ready_timeout
        self.client_id = ""

        self._connect = connect or websockets.connect
        self._next_request_id = request_id_factory or _timestamp_request_ids()
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._replay: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._dial_lock = asyncio.Lock()
        self._subscriptions: dict[str, list[_Listener]] = {}
        # topic → outcome of its first subscribe, while that is awaiting its ack
        self._inflight: dict[str, asyncio.Future] = {}
        self._pending: dict[str, _PendingRequest] = {}
        self._listener_ids = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._ready.is_set()

    def has_subscriptions(self) -> bool:
        return bool(self._subscriptions)

    # ─── Public API ────────────────────────────────────────

    async def publish(self, topic: str, data: Any = None) -> PublishAck:
        """Publish `data` to `topic` and wait for the server's ack.

        Raises AckTimeoutError when no ack arrives in time, and
        ClientResponseError carrying the server message on an `error` frame.
        """
        if not topic:
            raise ValueError("topic must be set")
        await self.ensure_socket()
        ack = await self._request({"type": PUBLISH, "topic": topic, "data": data})
        return PublishAck(
            id=str(ack.get("id") or ""),
            topic=topic,
            created=str(ack.get("created") or ""),
        )

    async def subscribe(self, topic: str, callback: MessageListener) -> Unsubscribe:
        """Attach a listener; every listener returns only once the server has acked the topic.

        Learn: the first listener of a topic sends the subscribe request.
        Listeners that arrive while that request is in flight wait on the
        same outcome, so nobody returns for a topic the server never
        accepted. When the first subscribe fails, the whole topic is
        dropped and every waiting listener gets the same error.

        Returns a coroutine function that removes just this listener. When
        it removes the topic's last listener it also unsubscribes on the
        server. Calling it again is a no-op.
        """
        if not topic:
            raise ValueError("topic must be set")
        if callback is None:
            raise ValueError("callback must be set")

        listener = _Listener(next(self._listener_ids), callback)
        listeners = self._subscriptions.setdefault(topic, [])
        listeners.append(listener)
        first = len(listeners) == 1
        inflight = self._inflight.get(topic)
        if first:
            inflight = asyncio.get_running_loop().create_future()
            self._inflight[topic] = inflight

        try:
            if first:
                await self.ensure_socket()
                await self._request({"type": SUBSCRIBE, "topic": topic})
                logger.info("pubsub.subscribed", topic=topic)
            elif inflight is not None:
                await asyncio.shield(inflight)
            else:
                await self.ensure_socket()
        except (Exception, asyncio.CancelledError) as e:
            if first:
                self._settle_inflight(topic, inflight, e)
                if self._subscriptions.get(topic) is listeners:
                    del self._subscriptions[topic]
            else:
                self._discard_listener(topic, listener.id)
            raise
        if first:
            self._settle_inflight(topic, inflight, None)

        async def unsubscribe() -> None:
            await self._remove_listener(topic, listener.id)

        return unsubscribe

    async def unsubscribe(self, topic: str = "") -> None:
        """Drop a topic's listeners; an empty topic drops everything and disconnects."""
        if not topic:
            self._subscriptions.clear()
            if self._ws is not None:
                with contextlib.suppress(Exception):
                    await self._send({"type": UNSUBSCRIBE})
            await self.disconnect()
            return

        if self._subscriptions.pop(topic, None) is not None:
            await self._unsubscribe_topic(topic)

    async def ping(self) -> dict[str, Any]:
        await self.ensure_socket()
        return await self._request({"type": PING})

    async def disconnect(self) -> None:
        """Close the socket and fail every request still waiting for an ack."""
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        self._ready.clear()
        self.client_id = ""
        self._fail_pending(ConnectionClosedError("pubsub connection closed"))

        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
            logger.info("pubsub.disconnected")
        replay, self._replay = self._replay, None
        for task in (reader, replay):
            if task is None or task is asyncio.current_task() or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def ensure_socket(self) -> None:
        """Dial the socket if there is none, then wait for its `ready` frame."""
        if self._ws is None:
            async with self._dial_lock:
                if self._ws is None:
                    await self._dial()
        try:
            await asyncio.wait_for(self._ready.wait(), self.ready_timeout)
        except asyncio.TimeoutError:
            await self.disconnect()
            raise ConnectionNotEstablishedError(
                "Pub/sub connection not established",
                url=self.client.build_url(PUBSUB_PATH),
                is_abort=True,
            ) from None

    # ─── Socket lifecycle ──────────────────────────────────

    def _ws_url(self) -> str:
        query = {}
        if self.client.auth_store.is_valid:
            query["token"] = self.client.auth_store.token
        parts = urlsplit(self.client.build_url(PUBSUB_PATH, query))
        scheme = "wss" if parts.scheme == "https" else "ws"
        return urlunsplit(parts._replace(scheme=scheme))

    async def _dial(self) -> None:
        url = self._ws_url()
        # never surface the token in errors or logs
        public_url = url.split("?", 1)[0]
        try:
            ws = await self._connect(url)
        except (OSError, websockets.WebSocketException) as e:
            raise ClientResponseError(url=public_url, original_error=e) from e
        self._ws = ws
        self._ready.clear()
        self._reader = asyncio.create_task(self._read_loop(ws), name="bosbase-pubsub")
        logger.info("pubsub.connected", url=public_url)

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("pubsub.invalid_frame")
                    continue
                if isinstance(frame, dict):
                    await self._handle_frame(frame)
        except websockets.ConnectionClosed as e:
            logger.info("pubsub.connection_closed", code=getattr(e, "code", None))
        except Exception:
            logger.exception("pubsub.read_failed")
        finally:
            if self._ws is ws:
                await self.disconnect()

    async def _send(self, envelope: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise ConnectionClosedError("pubsub connection not initialized")
        try:
            await ws.send(json.dumps(envelope))
        except (OSError, websockets.WebSocketException) as e:
            raise ClientResponseError(original_error=e) from e

    # ─── Request/ack correlation ───────────────────────────

    async def _request(self, envelope: dict[str, Any]) -> dict[str, Any]:
        request_id = self._next_request_id()
        waiter = self._wait_for_ack(request_id)
        try:
            await self._send({**envelope, "requestId": request_id})
        except (Exception, asyncio.CancelledError):
            self._drop_pending(request_id)
            raise

        try:
            payload = await waiter
        finally:
            self._drop_pending(request_id)
        if payload is None:
            raise AckTimeoutError(f"missing {envelope['type']} ack", response={"requestId": request_id})
        return payload

    def _wait_for_ack(self, request_id: str) -> asyncio.Future:
        if request_id in self._pending:
            raise ValueError(f"request id {request_id!r} is already pending")
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(self.ack_timeout, self._expire_pending, request_id)
        self._pending[request_id] = _PendingRequest(future, timer)
        return future

    def _take_pending(self, request_id: str) -> Optional[_PendingRequest]:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()
            if pending.future.done():
                return None
        return pending

    def _drop_pending(self, request_id: str) -> None:
        pending = self._take_pending(request_id)
        if pending is not None:
            pending.future.cancel()

    def _resolve_pending(self, request_id: str, payload: dict[str, Any]) -> None:
        pending = self._take_pending(request_id)
        if pending is not None:
            pending.future.set_result(payload)

    def _reject_pending(self, request_id: str, error: Exception) -> None:
        pending = self._take_pending(request_id)
        if pending is not None:
            pending.future.set_exception(error)

    def _expire_pending(self, request_id: str) -> None:
        pending = self._take_pending(request_id)
        if pending is not None:
            logger.warning("pubsub.ack_timeout", request_id=request_id)
            pending.future.set_result(None)

    def _fail_pending(self, error: Exception) -> None:
        for request_id in list(self._pending):
            self._reject_pending(request_id, error)

    # ─── Frame dispatch ────────────────────────────────────

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type")
        request_id = frame.get("requestId")

        if frame_type == READY:
            self.client_id = str(frame.get("clientId") or "")
            self._ready.set()
            logger.info("pubsub.ready", client_id=self.client_id)
            # Acks come through this loop, so the replay must not block it.
            # Topics still in flight are sent by their own first subscriber.
            topics = [t for t in self._subscriptions if t not in self._inflight]
            if topics:
                self._replay = asyncio.create_task(self._resubscribe(topics))
        elif frame_type == MESSAGE:
            await self._dispatch_message(frame)
        elif frame_type in ACK_TYPES:
            if isinstance(request_id, str):
                self._resolve_pending(request_id, frame)
        elif frame_type == ERROR:
            if isinstance(request_id, str):
                message = str(frame.get("message") or "pubsub request failed")
                self._reject_pending(request_id, ClientResponseError(message))
        else:
            logger.debug("pubsub.unknown_frame", type=frame_type)

    async def _dispatch_message(self, frame: dict[str, Any]) -> None:
        topic = str(frame.get("topic") or "")
        message = PubSubMessage(
            id=str(frame.get("id") or ""),
            topic=topic,
            created=str(frame.get("created") or ""),
            data=frame.get("data"),
        )
        for listener in list(self._subscriptions.get(topic, ())):
            await call_listener(
                listener.callback,
                message,
                "pubsub.listener_failed",
                topic=topic,
                listener_id=listener.id,
            )

    async def _resubscribe(self, topics: list[str]) -> None:
        for topic in topics:
            if topic not in self._subscriptions:
                continue
            try:
                await self._request({"type": SUBSCRIBE, "topic": topic})
            except ClientResponseError as e:
                logger.warning("pubsub.resubscribe_failed", topic=topic, error=str(e))
            else:
                logger.info("pubsub.resubscribed", topic=topic)

    # ─── Listener bookkeeping ──────────────────────────────

    def _settle_inflight(
        self, topic: str, future: asyncio.Future, error: Optional[BaseException]
    ) -> None:
        if self._inflight.get(topic) is future:
            del self._inflight[topic]
        if future.done():
            return
        if error is None:
            future.set_result(None)
            return
        if isinstance(error, asyncio.CancelledError):
            error = ClientResponseError(f"subscribe to {topic} was cancelled", is_abort=True)
        future.set_exception(error)
        # waiting listeners re-raise it; with none waiting it must not be logged as lost
        future.exception()

    def _discard_listener(self, topic: str, listener_id: int) -> bool:
        listeners = self._subscriptions.get(topic)
        if not listeners:
            return False
        remaining = [entry for entry in listeners if entry.id != listener_id]
        if len(remaining) == len(listeners):
            return False
        if remaining:
            self._subscriptions[topic] = remaining
        else:
            del self._subscriptions[topic]
        return True

    async def _remove_listener(self, topic: str, listener_id: int) -> None:
        if not self._discard_listener(topic, listener_id):
            return
        if topic not in self._subscriptions:
            await self._unsubscribe_topic(topic)

    async def _unsubscribe_topic(self, topic: str) -> None:
        """Tell the server we no longer want `topic`; disconnect when nothing is left."""
        try:
            if self._ws is not None and asyncio.current_task() is self._reader:
                # Called from a listener: the reader cannot wait for its own ack.
                await self._send(
                    {"type": UNSUBSCRIBE, "topic": topic, "requestId": self._next_request_id()}
                )
            elif self._ws is not None:
                await self._request({"type": UNSUBSCRIBE, "topic": topic})
                logger.info("pubsub.unsubscribed", topic=topic)
        finally:
            if not self._subscriptions:
                await self.disconnect()
