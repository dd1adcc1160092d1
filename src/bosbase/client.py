"""BosBase client — REST transport plus the realtime and pub/sub managers.

Learn: one BosBase instance owns one httpx.AsyncClient, one realtime
(SSE) manager and one pub/sub (WebSocket) manager. The managers open
their connections lazily, only when something subscribes or publishes,
so a client used purely for REST calls never holds a socket.

    async with BosBase("https://api.example.com") as pb:
        await pb.collection("users").auth_with_password("a@b.c", "secret")
        unsubscribe = await pb.collection("posts").subscribe("*", print)
"""

import inspect
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog

from bosbase import __version__
from bosbase.auth import AuthStore
from bosbase.config import Settings, settings as default_settings
from bosbase.errors import ClientResponseError
from bosbase.pubsub import PubSubService
from bosbase.realtime import RealtimeService
from bosbase.services import BatchService, FileService, HealthService, RecordService
from bosbase.utils import build_url, to_serializable

logger = structlog.get_logger()

USER_AGENT = f"bosbase-python-sdk/{__version__}"

BeforeSendHook = Callable[[str, dict[str, Any]], Union[Optional[str], Awaitable[Optional[str]]]]
AfterSendHook = Callable[[httpx.Response, Any], Any]


class BosBase:
    """Async client for a BosBase backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        lang: Optional[str] = None,
        auth_store: Optional[AuthStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        before_send: Optional[BeforeSendHook] = None,
        after_send: Optional[AfterSendHook] = None,
        pubsub_connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        pubsub_request_id_factory: Optional[Callable[[], str]] = None,
    ):
        self.settings = settings or default_settings
        self.base_url = (base_url or self.settings.base_url).rstrip("/") or "/"
        self.lang = lang or self.settings.lang
        self.timeout = self.settings.timeout
        self.auth_store = auth_store or AuthStore()
        self.before_send = before_send
        self.after_send = after_send

        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._records: dict[str, RecordService] = {}

        self.realtime = RealtimeService(
            self,
            connect_timeout=self.settings.realtime_connect_timeout,
            backoff=self.settings.realtime_backoff,
        )
        self.pubsub = PubSubService(
            self,
            connect=pubsub_connect,
            request_id_factory=pubsub_request_id_factory,
            ack_timeout=self.settings.pubsub_ack_timeout,
            ready_timeout=self.settings.pubsub_ready_timeout,
        )
        self.health = HealthService(self)
        self.files = FileService(self)

    async def __aenter__(self) -> "BosBase":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Drop both push connections and release the HTTP client."""
        await self.realtime.disconnect()
        await self.pubsub.disconnect()
        if self._owns_http:
            await self.http.aclose()

    def collection(self, id_or_name: str) -> RecordService:
        """Return the (cached) record service for a collection."""
        service = self._records.get(id_or_name)
        if service is None:
            service = RecordService(self, id_or_name)
            self._records[id_or_name] = service
        return service

    def create_batch(self) -> BatchService:
        """Start a new, empty batch of record requests."""
        return BatchService(self)

    def build_url(self, path: str, query: Optional[dict[str, Any]] = None) -> str:
        return build_url(self.base_url, path, query)

    def filter(self, expr: str, params: Optional[dict[str, Any]] = None) -> str:
        """Interpolate `{:name}` placeholders with safely quoted values.

        Learn: this is the only client-side help with filters. The filter
        language itself is never parsed or validated here.
        """
        if not params:
            return expr
        result = expr
        for key, value in params.items():
            placeholder = "{:" + key + "}"
            if value is None:
                replacement = "null"
            elif isinstance(value, bool):
                replacement = "true" if value else "false"
            elif isinstance(value, (int, float)):
                replacement = str(value)
            elif isinstance(value, str):
                replacement = "'" + value.replace("'", "\\'") + "'"
            elif isinstance(value, datetime):
                replacement = "'" + value.strftime("%Y-%m-%d %H:%M:%S") + "'"
            else:
                serialized = json.dumps(value, default=str)
                replacement = "'" + serialized.replace("'", "\\'") + "'"
            result = result.replace(placeholder, replacement)
        return result

    def request_headers(self, headers: Optional[dict[str, str]] = None) -> dict[str, str]:
        """Default headers merged with `headers`, plus the auth token when valid."""
        merged = {"Accept-Language": self.lang, "User-Agent": USER_AGENT}
        merged.update(headers or {})
        has_auth = any(name.lower() == "authorization" for name in merged)
        if not has_auth and self.auth_store.is_valid:
            merged["Authorization"] = self.auth_store.token
        return merged

    async def send(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        query: Optional[dict[str, Any]] = None,
        body: Any = None,
        files: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request to the API and return the decoded response.

        JSON bodies by default. When `files` is given the request becomes
        multipart, with the JSON body in a `@jsonPayload` form field.

        Raises ClientResponseError on transport failure or status >= 400.
        """
        options: dict[str, Any] = {
            "method": method.upper(),
            "headers": self.request_headers(headers),
            "query": dict(query or {}),
            "body": to_serializable(body),
            "files": dict(files or {}),
            "timeout": timeout,
        }
        url = self.build_url(path, options["query"])

        if self.before_send is not None:
            override = self.before_send(url, options)
            if inspect.isawaitable(override):
                override = await override
            url = override or self.build_url(path, options["query"])

        request_kwargs: dict[str, Any] = {"headers": options["headers"]}
        payload = to_serializable(options["body"])
        if options["files"]:
            request_kwargs["data"] = {"@jsonPayload": json.dumps(payload or {})}
            request_kwargs["files"] = _multipart_files(options["files"])
        elif payload is not None:
            request_kwargs["json"] = payload

        try:
            response = await self.http.request(
                options["method"],
                url,
                timeout=options["timeout"] or self.timeout,
                **request_kwargs,
            )
        except httpx.TimeoutException as e:
            raise ClientResponseError(url=url, is_abort=True, original_error=e) from e
        except httpx.HTTPError as e:
            raise ClientResponseError(url=url, original_error=e) from e

        logger.debug(
            "http.response",
            method=options["method"],
            url=url,
            status=response.status_code,
        )

        data = _decode_response(response)
        if response.status_code >= 400:
            raise ClientResponseError(
                url=url,
                status=response.status_code,
                response=data if isinstance(data, dict) else {},
            )

        if self.after_send is not None:
            data = self.after_send(response, data)
            if inspect.isawaitable(data):
                data = await data
        return data


def _multipart_files(files: dict[str, Any]) -> list[tuple[str, Any]]:
    parts: list[tuple[str, Any]] = []
    for field, value in files.items():
        if isinstance(value, list):
            parts.extend((field, item) for item in value)
        else:
            parts.append((field, value))
    return parts


def _decode_response(response: httpx.Response) -> Any:
    if response.status_code == 204:
        return None
    content_type = response.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}
    return response.content
