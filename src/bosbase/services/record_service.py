"""Record service — collection CRUD, realtime topics and auth flows.

Learn: record subscriptions are just realtime subscriptions with the
collection name prefixed to the topic ("posts" + "*" → "posts/*").
The OAuth2 flow also rides on realtime: the backend's redirect page
pushes the provider's response to the `@oauth2` topic, tagged with the
realtime client id we sent as the OAuth2 `state`.
"""

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from bosbase.auth.token import TokenError, decode_token
from bosbase.errors import ClientResponseError
from bosbase.events.types import EXTERNAL_AUTHS_COLLECTION, OAUTH2_TOPIC
from bosbase.realtime.service import Listener, Unsubscribe
from bosbase.services.base import BaseCrudService, _with_options
from bosbase.utils import encode_path_segment

if TYPE_CHECKING:
    from bosbase.client import BosBase

logger = structlog.get_logger()

UrlCallback = Callable[[str], Union[None, Awaitable[None]]]


class RecordService(BaseCrudService):
    def __init__(self, client, collection: str):
        super().__init__(
            client, f"/api/collections/{encode_path_segment(collection)}/records"
        )
        self.collection = collection
        self.collection_path = f"/api/collections/{encode_path_segment(collection)}"

    # ─── Realtime ──────────────────────────────────────────

    async def subscribe(
        self,
        topic: str,
        callback: Listener,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Unsubscribe:
        """Subscribe to record events; `topic` is a record id or "*"."""
        if not topic:
            raise ValueError("topic must be set")
        if callback is None:
            raise ValueError("callback must be set")
        return await self.client.realtime.subscribe(
            f"{self.collection}/{topic}", callback, query, headers
        )

    async def unsubscribe(self, topic: str = "") -> None:
        """Drop one topic, or every subscription of this collection when `topic` is empty."""
        if topic:
            await self.client.realtime.unsubscribe(f"{self.collection}/{topic}")
        else:
            await self.client.realtime.unsubscribe_by_prefix(f"{self.collection}/")

    # ─── CRUD overrides that keep the auth store in sync ───

    async def update(self, item_id: str, body=None, **kwargs: Any) -> dict[str, Any]:
        item = await super().update(item_id, body, **kwargs)
        self._maybe_update_auth_record(item)
        return item

    async def delete(self, item_id: str, **kwargs: Any) -> None:
        await super().delete(item_id, **kwargs)
        if self._is_auth_record(item_id):
            self.client.auth_store.clear()

    async def get_count(
        self,
        *,
        filter: str = "",
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> int:
        params = _with_options(query, filter=filter, expand=expand, fields=fields)
        data = await self.client.send(
            self.base_path + "/count", query=params, headers=headers
        )
        if isinstance(data, dict) and isinstance(data.get("count"), (int, float)):
            return int(data["count"])
        return 0

    # ─── Auth ──────────────────────────────────────────────

    async def list_auth_methods(
        self,
        *,
        fields: str = "mfa,otp,password,oauth2",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        params = _with_options(query, fields=fields)
        data = await self.client.send(
            self.collection_path + "/auth-methods", query=params, headers=headers
        )
        return data if isinstance(data, dict) else {}

    async def auth_with_password(
        self,
        identity: str,
        password: str,
        *,
        expand: str = "",
        fields: str = "",
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        payload = dict(body or {})
        payload["identity"] = identity
        payload["password"] = password
        data = await self.client.send(
            self.collection_path + "/auth-with-password",
            method="POST",
            body=payload,
            query=_with_options(query, expand=expand, fields=fields),
            headers=headers,
        )
        return self._auth_response(data)

    async def auth_refresh(
        self,
        *,
        expand: str = "",
        fields: str = "",
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        data = await self.client.send(
            self.collection_path + "/auth-refresh",
            method="POST",
            body=body,
            query=_with_options(query, expand=expand, fields=fields),
            headers=headers,
        )
        return self._auth_response(data)

    async def auth_with_oauth2_code(
        self,
        provider: str,
        code: str,
        code_verifier: str,
        redirect_url: str,
        *,
        create_data: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        payload = dict(body or {})
        payload.update(
            provider=provider,
            code=code,
            codeVerifier=code_verifier,
            redirectURL=redirect_url,
        )
        if create_data is not None:
            payload["createData"] = create_data
        data = await self.client.send(
            self.collection_path + "/auth-with-oauth2",
            method="POST",
            body=payload,
            query=_with_options(query, expand=expand, fields=fields),
            headers=headers,
        )
        return self._auth_response(data)

    async def auth_with_oauth2(
        self,
        provider: str,
        url_callback: UrlCallback,
        *,
        scopes: Optional[list[str]] = None,
        create_data: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Run the OAuth2 popup flow through the realtime `@oauth2` topic.

        Learn: the sequence is
        1. find the provider in list_auth_methods()
        2. subscribe to @oauth2 and wait for the realtime client id
        3. hand the provider URL (state=<client id>) to url_callback,
           which is expected to open it in a browser
        4. wait for the redirect page to push {state, code} back
        5. exchange the code for an auth token
        """
        methods = await self.list_auth_methods()
        providers = (methods.get("oauth2") or {}).get("providers") or []
        match = next(
            (p for p in providers if isinstance(p, dict) and p.get("name") == provider),
            None,
        )
        if match is None:
            raise ClientResponseError(f"missing provider {provider}")

        realtime = self.client.realtime
        redirect_url = self.client.build_url("/api/oauth2-redirect")
        outcome: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_redirect(event: dict[str, Any]) -> None:
            if outcome.done() or event.get("state") != realtime.client_id:
                return
            outcome.set_result(event)

        unsubscribe = await realtime.subscribe(OAUTH2_TOPIC, on_redirect)
        try:
            auth_url = _with_query(
                str(match.get("authURL") or "") + redirect_url,
                state=realtime.client_id,
                scope=" ".join(scopes) if scopes else None,
            )
            result = url_callback(auth_url)
            if inspect.isawaitable(result):
                await result
            try:
                event = await asyncio.wait_for(
                    outcome, timeout or self.client.settings.oauth2_timeout
                )
            except asyncio.TimeoutError:
                raise ClientResponseError("OAuth2 flow timed out", is_abort=True)
        finally:
            await unsubscribe()

        if event.get("error"):
            raise ClientResponseError(str(event["error"]))
        code = event.get("code")
        if not code:
            raise ClientResponseError("OAuth2 redirect missing code")
        logger.info("oauth2.code_received", provider=provider, collection=self.collection)
        return await self.auth_with_oauth2_code(
            provider,
            str(code),
            str(match.get("codeVerifier") or ""),
            redirect_url,
            create_data=create_data,
            expand=expand,
            fields=fields,
        )

    # ─── Account flows ─────────────────────────────────────

    async def _post_action(
        self,
        action: str,
        payload: dict[str, Any],
        body: Optional[dict[str, Any]],
        query: Optional[dict[str, Any]],
        headers: Optional[dict[str, str]],
    ) -> Any:
        return await self.client.send(
            f"{self.collection_path}/{action}",
            method="POST",
            body={**(body or {}), **payload},
            query=query,
            headers=headers,
        )

    async def request_password_reset(
        self,
        email: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_action(
            "request-password-reset", {"email": email}, body, query, headers
        )

    async def confirm_password_reset(
        self,
        token: str,
        password: str,
        password_confirm: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_action(
            "confirm-password-reset",
            {"token": token, "password": password, "passwordConfirm": password_confirm},
            body,
            query,
            headers,
        )

    async def request_verification(
        self,
        email: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_action(
            "request-verification", {"email": email}, body, query, headers
        )

    async def confirm_verification(
        self,
        token: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Confirm an email verification; the stored auth record is marked verified when it matches."""
        await self._post_action(
            "confirm-verification", {"token": token}, body, query, headers
        )
        current = self.client.auth_store.record
        if self._token_matches_record(token, current) and not current.get("verified"):
            self.client.auth_store.save(
                self.client.auth_store.token, {**current, "verified": True}
            )

    async def request_email_change(
        self,
        new_email: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_action(
            "request-email-change", {"newEmail": new_email}, body, query, headers
        )

    async def confirm_email_change(
        self,
        token: str,
        password: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Confirm an email change. The old auth token dies with it, so a matching store is cleared."""
        await self._post_action(
            "confirm-email-change",
            {"token": token, "password": password},
            body,
            query,
            headers,
        )
        if self._token_matches_record(token, self.client.auth_store.record):
            self.client.auth_store.clear()

    async def request_otp(
        self,
        email: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Ask the server to email a one-time password; the response carries its `otpId`."""
        data = await self._post_action("request-otp", {"email": email}, body, query, headers)
        return data if isinstance(data, dict) else {}

    async def auth_with_otp(
        self,
        otp_id: str,
        password: str,
        *,
        expand: str = "",
        fields: str = "",
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        data = await self._post_action(
            "auth-with-otp",
            {"otpId": otp_id, "password": password},
            body,
            _with_options(query, expand=expand, fields=fields),
            headers,
        )
        return self._auth_response(data)

    async def bind_custom_token(
        self,
        email: str,
        password: str,
        token: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_action(
            "bind-token",
            {"email": email, "password": password, "token": token},
            body,
            query,
            headers,
        )

    async def unbind_custom_token(
        self,
        email: str,
        password: str,
        token: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_action(
            "unbind-token",
            {"email": email, "password": password, "token": token},
            body,
            query,
            headers,
        )

    async def auth_with_token(
        self,
        token: str,
        *,
        expand: str = "",
        fields: str = "",
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Authenticate with a custom token previously bound by bind_custom_token()."""
        data = await self._post_action(
            "auth-with-token",
            {"token": token},
            body,
            _with_options(query, expand=expand, fields=fields),
            headers,
        )
        return self._auth_response(data)

    async def list_external_auths(
        self,
        record_id: str,
        *,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> list[dict[str, Any]]:
        """OAuth2 providers linked to an auth record."""
        items = await self.client.collection(EXTERNAL_AUTHS_COLLECTION).get_full_list(
            filter=self.client.filter("recordRef = {:id}", {"id": record_id}),
            query=query,
            headers=headers,
        )
        return [item for item in items if isinstance(item, dict)]

    async def impersonate(
        self,
        record_id: str,
        duration: int = 0,
        *,
        expand: str = "",
        fields: str = "",
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> "BosBase":
        """Return a new client authenticated as `record_id` (superuser only).

        Learn: the impersonated client gets its own AuthStore, so the
        caller's session is untouched. It shares this client's HTTP
        connection pool; closing it leaves that pool open.
        `duration` is the token lifetime in seconds, 0 for the server default.
        """
        from bosbase.client import BosBase

        if not record_id:
            raise ValueError("record id must be set")
        impersonated = BosBase(
            self.client.base_url,
            lang=self.client.lang,
            http_client=self.client.http,
            settings=self.client.settings,
        )
        data = await impersonated.send(
            f"{self.collection_path}/impersonate/{encode_path_segment(record_id)}",
            method="POST",
            body={**(body or {}), "duration": duration},
            query=_with_options(query, expand=expand, fields=fields),
            # the new client's store is empty; authorize with the caller's token
            headers=self.client.request_headers(headers),
        )
        if isinstance(data, dict) and data.get("token") and isinstance(data.get("record"), dict):
            impersonated.auth_store.save(data["token"], data["record"])
        logger.info("auth.impersonated", collection=self.collection, record_id=record_id)
        return impersonated

    # ─── Auth store helpers ────────────────────────────────

    def _token_matches_record(self, token: str, record: Optional[dict[str, Any]]) -> bool:
        if not record:
            return False
        try:
            payload = decode_token(token)
        except TokenError:
            return False
        return (
            str(record.get("id")) == str(payload.get("id"))
            and str(record.get("collectionId")) == str(payload.get("collectionId"))
        )

    def _auth_response(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            return {}
        token = data.get("token")
        record = data.get("record")
        if token and isinstance(record, dict):
            self.client.auth_store.save(token, record)
        return data

    def _belongs_to_collection(self, record: dict[str, Any]) -> bool:
        return self.collection in (record.get("collectionId"), record.get("collectionName"))

    def _is_auth_record(self, item_id: str) -> bool:
        current = self.client.auth_store.record
        return bool(
            current
            and current.get("id") == item_id
            and self._belongs_to_collection(current)
        )

    def _maybe_update_auth_record(self, item: dict[str, Any]) -> None:
        current = self.client.auth_store.record
        if not current or current.get("id") != item.get("id"):
            return
        if not self._belongs_to_collection(current):
            return
        merged = {**current, **item}
        if isinstance(current.get("expand"), dict) and isinstance(item.get("expand"), dict):
            merged["expand"] = {**current["expand"], **item["expand"]}
        self.client.auth_store.save(self.client.auth_store.token, merged)


def _with_query(url: str, **params: Optional[str]) -> str:
    parts = urlsplit(url)
    pairs = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    pairs.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(pairs)))
