"""Realtime (SSE) manager — subscription multiplexing over one stream.

Learn: the manager owns three things:
1. A map of subscription key → listeners (the local subscription set)
2. One background task running the connect/listen/backoff loop
3. The server-issued client id, valid only for the current stream

Connection states:

  DISCONNECTED → CONNECTING → CONNECTED → READY (PB_CONNECT received)
       ↑             ↑  └─ fail ─┐    │
       │             └─ backoff ─┴────┘ stream ended, subscriptions left
       └──────────── stream ended, no subscriptions left

The subscription-sync POST needs the client id, so nothing is posted
before READY. Every map mutation happens between await points, so the
event loop serializes them without an explicit lock.
"""

import asyncio
import contextlib
import enum
import itertools
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence, Union

import httpx
import structlog

from bosbase.errors import ClientResponseError, ConnectionNotEstablishedError
from bosbase.events.types import CONNECT_EVENT, REALTIME_PATH
from bosbase.listeners import call_listener
from bosbase.realtime.sse import SSEEvent, SSEParser
from bosbase.utils import build_subscription_key, matches_topic

if TYPE_CHECKING:
    from bosbase.client import BosBase

logger = structlog.get_logger()

Listener = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], Awaitable[None]]
DisconnectHook = Callable[[list[str]], Union[None, Awaitable[None]]]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"  # stream open, handshake not yet received
    READY = "ready"


@dataclass
class _Listener:
    id: int
    callback: Listener


class RealtimeService:
    """Subscribe/unsubscribe over logical topics on a single SSE stream."""

    def __init__(
        self,
        client: "BosBase",
        *,
        connect_timeout: float = 10.0,
        backoff: Sequence[float] = (0.2, 0.5, 1.0, 2.0, 5.0),
        on_disconnect: Optional[DisconnectHook] = None,
    ):
        self.client = client
        self.connect_timeout = connect_timeout
        self.backoff = list(backoff)
        self.on_disconnect = on_disconnect
        self.client_id = ""

        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: dict[str, list[_Listener]] = {}
        self._listener_ids = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        # (client id, keys) of the last sync posted on the current stream
        self._last_sync: Optional[tuple[str, tuple[str, ...]]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.READY

    def get_active_subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    def has_subscriptions(self) -> bool:
        return bool(self._subscriptions)

    # ─── Public API ────────────────────────────────────────

    async def subscribe(
        self,
        topic: str,
        callback: Listener,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Unsubscribe:
        """Register a listener and make sure the server knows about its topic.

        Returns a coroutine function that removes just this listener.
        Calling it again is a no-op.

        Raises ConnectionNotEstablishedError when the handshake does not
        arrive within connect_timeout; the listener is dropped in that case.
        """
        if not topic:
            raise ValueError("topic must be set")
        if callback is None:
            raise ValueError("callback must be set")

        key = build_subscription_key(topic, query, headers)
        listener = _Listener(next(self._listener_ids), callback)
        self._subscriptions.setdefault(key, []).append(listener)
        logger.debug("realtime.listener_added", key=key, listener_id=listener.id)

        try:
            await self.ensure_connected(self.connect_timeout)
            await self._submit_subscriptions()
        except (Exception, asyncio.CancelledError):
            if self._discard_listener(key, listener.id) and not self._subscriptions:
                await self.disconnect()
            raise

        async def unsubscribe() -> None:
            await self._remove_listener(key, listener.id)

        return unsubscribe

    async def unsubscribe(self, topic: str = "") -> None:
        """Drop every key for `topic` (with or without options).

        An empty topic drops everything and disconnects.
        """
        if not topic:
            self._subscriptions.clear()
        else:
            for key in [k for k in self._subscriptions if matches_topic(k, topic)]:
                del self._subscriptions[key]
        await self._resync_or_disconnect()

    async def unsubscribe_by_prefix(self, prefix: str) -> None:
        """Drop every key that starts with `prefix`."""
        for key in [k for k in self._subscriptions if k.startswith(prefix)]:
            del self._subscriptions[key]
        await self._resync_or_disconnect()

    async def ensure_connected(self, timeout: Optional[float] = None) -> None:
        """Start the loop if needed and wait until the handshake has arrived."""
        self._ensure_task()
        if self._ready.is_set():
            return
        try:
            await asyncio.wait_for(
                self._ready.wait(),
                self.connect_timeout if timeout is None else timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectionNotEstablishedError(
                "Realtime connection not established",
                url=self.client.build_url(REALTIME_PATH),
                is_abort=True,
            ) from None

    async def disconnect(self) -> None:
        """Stop the background loop. The subscription map is left untouched."""
        task, self._task = self._task, None
        self._mark_disconnected()
        if task is None or task.done():
            return

        logger.info("realtime.disconnected", subscriptions=len(self._subscriptions))
        if self.on_disconnect is not None:
            await call_listener(
                self.on_disconnect,
                list(self._subscriptions),
                "realtime.on_disconnect_failed",
            )

        # Called from a listener inside the loop: the loop sees it was
        # replaced and exits after the current dispatch.
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ─── Subscription set ──────────────────────────────────

    def _discard_listener(self, key: str, listener_id: int) -> bool:
        listeners = self._subscriptions.get(key)
        if not listeners:
            return False
        remaining = [entry for entry in listeners if entry.id != listener_id]
        if len(remaining) == len(listeners):
            return False
        if remaining:
            self._subscriptions[key] = remaining
        else:
            del self._subscriptions[key]
        return True

    async def _remove_listener(self, key: str, listener_id: int) -> None:
        if not self._discard_listener(key, listener_id):
            return
        logger.debug("realtime.listener_removed", key=key, listener_id=listener_id)
        await self._resync_or_disconnect()

    async def _resync_or_disconnect(self) -> None:
        if self._subscriptions:
            await self._submit_subscriptions()
        else:
            await self.disconnect()

    async def _submit_subscriptions(self) -> None:
        """POST the full subscription set, tagged with the current client id."""
        keys = tuple(self._subscriptions)
        if not self.client_id or not keys:
            return
        snapshot = (self.client_id, keys)
        if snapshot == self._last_sync:
            return

        self._last_sync = snapshot
        try:
            await self.client.send(
                REALTIME_PATH,
                method="POST",
                body={"clientId": self.client_id, "subscriptions": list(keys)},
            )
        except (Exception, asyncio.CancelledError):
            if self._last_sync == snapshot:
                self._last_sync = None
            raise
        logger.debug("realtime.synced", client_id=self.client_id, subscriptions=len(keys))

    # ─── Connection loop ───────────────────────────────────

    def _ensure_task(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._state = ConnectionState.CONNECTING
        self._task = asyncio.create_task(self._run(), name="bosbase-realtime")

    def _mark_disconnected(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._ready.clear()
        self.client_id = ""
        self._last_sync = None

    async def _run(self) -> None:
        me = asyncio.current_task()
        url = self.client.build_url(REALTIME_PATH)
        attempt = 0

        while self._task is me:
            self._state = ConnectionState.CONNECTING
            try:
                async with self.client.http.stream(
                    "GET",
                    url,
                    headers=self.client.request_headers(
                        {"Accept": "text/event-stream", "Cache-Control": "no-store"}
                    ),
                    timeout=httpx.Timeout(self.client.timeout, read=None),
                ) as response:
                    if response.status_code >= 400:
                        raise ClientResponseError(url=url, status=response.status_code)
                    attempt = 0
                    self._state = ConnectionState.CONNECTED
                    logger.info("realtime.stream_opened", url=url)
                    await self._listen(response, me)
            except (httpx.HTTPError, ClientResponseError) as e:
                logger.warning("realtime.stream_failed", url=url, error=str(e), attempt=attempt)
            except Exception:
                # anything else: log it, then reconnect like a dropped stream
                logger.exception("realtime.stream_crashed", url=url, attempt=attempt)

            if self._task is not me:
                return
            await self._handle_stream_end()
            if not self._subscriptions:
                self._task = None
                logger.info("realtime.idle")
                return

            delay = self.backoff[min(attempt, len(self.backoff) - 1)]
            attempt += 1
            logger.info("realtime.reconnect_scheduled", delay=delay, attempt=attempt)
            await asyncio.sleep(delay)

    async def _listen(self, response: httpx.Response, me: Optional[asyncio.Task]) -> None:
        parser = SSEParser()
        async for line in response.aiter_lines():
            event = parser.feed_line(line)
            if event is None:
                continue
            await self._dispatch(event)
            # a listener may have torn the connection down
            if self._task is not me:
                return

    async def _handle_stream_end(self) -> None:
        self._mark_disconnected()
        keys = list(self._subscriptions)
        logger.info("realtime.stream_closed", subscriptions=len(keys))
        if self.on_disconnect is not None:
            await call_listener(self.on_disconnect, keys, "realtime.on_disconnect_failed")

    # ─── Event dispatch ────────────────────────────────────

    async def _dispatch(self, event: SSEEvent) -> None:
        payload = event.json()
        if event.event == CONNECT_EVENT:
            await self._on_connect(event, payload)
            return

        for listener in list(self._subscriptions.get(event.event, ())):
            await call_listener(
                listener.callback,
                payload,
                "realtime.listener_failed",
                key=event.event,
                listener_id=listener.id,
            )

    async def _on_connect(self, event: SSEEvent, payload: dict[str, Any]) -> None:
        self.client_id = str(payload.get("clientId") or event.id or "")
        self._last_sync = None
        self._state = ConnectionState.READY
        self._ready.set()
        logger.info("realtime.ready", client_id=self.client_id)

        # Reconnect case: the server forgot everything with the old client id.
        try:
            await self._submit_subscriptions()
        except ClientResponseError as e:
            logger.warning("realtime.sync_failed", client_id=self.client_id, error=str(e))
        except Exception:
            # e.g. a before_send/after_send hook raising
            logger.exception("realtime.sync_failed", client_id=self.client_id)
