"""Error types raised by the client.

Learn: every failure that reaches a caller is a ClientResponseError, so
one `except ClientResponseError` covers REST, realtime and pub/sub. The
subclasses let callers tell "the server is slow" (timeouts) apart from
"the server said no" (a plain ClientResponseError carrying the server's
message). Caller misuse (empty topic, missing callback) raises ValueError
before any network activity.
"""

from typing import Any, Optional


class ClientResponseError(Exception):
    """A normalized failure from the backend or the transport under it."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        url: str = "",
        status: int = 0,
        response: Optional[dict[str, Any]] = None,
        is_abort: bool = False,
        original_error: Optional[BaseException] = None,
    ):
        self.url = url
        self.status = status
        self.response: dict[str, Any] = dict(response or {})
        if message and "message" not in self.response:
            self.response["message"] = message
        self.is_abort = is_abort
        self.original_error = original_error
        super().__init__(self.message or str(self))

    @property
    def message(self) -> str:
        value = self.response.get("message")
        if value:
            return str(value)
        if self.original_error is not None:
            return str(self.original_error)
        return ""

    def __str__(self) -> str:
        return (
            f"ClientResponseError(status={self.status}, url={self.url}, "
            f"response={self.response}, is_abort={self.is_abort})"
        )


class ConnectionNotEstablishedError(ClientResponseError):
    """The realtime handshake or the pub/sub ready frame did not arrive in time."""


class AckTimeoutError(ClientResponseError):
    """A pub/sub request was sent but no ack came back before its timer fired."""


class ConnectionClosedError(ClientResponseError):
    """A pending pub/sub request was abandoned because the socket went away."""
