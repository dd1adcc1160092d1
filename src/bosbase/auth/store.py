"""In-memory auth store — current token + auth record, with change listeners.

Learn: both realtime managers read the token only when they open a
connection. Saving a new token does not touch an already-open stream
or socket; the next reconnect picks it up.
"""

import threading
from typing import Any, Callable, Optional

import structlog

from bosbase.auth.token import is_token_expired

logger = structlog.get_logger()

AuthListener = Callable[[str, Optional[dict[str, Any]]], None]


class AuthStore:
    """Holds the current token and auth record, guarded by a lock."""

    def __init__(self, token: str = "", record: Optional[dict[str, Any]] = None):
        self._lock = threading.RLock()
        self._token = token
        self._record = dict(record) if record else None
        self._listeners: dict[int, AuthListener] = {}
        self._next_id = 0

    @property
    def token(self) -> str:
        with self._lock:
            return self._token

    @property
    def record(self) -> Optional[dict[str, Any]]:
        with self._lock:
            return dict(self._record) if self._record is not None else None

    @property
    def is_valid(self) -> bool:
        """True when a well-formed, non-expired JWT is stored."""
        token = self.token
        return bool(token) and not is_token_expired(token)

    def save(self, token: str, record: Optional[dict[str, Any]] = None) -> None:
        with self._lock:
            self._token = token or ""
            self._record = dict(record) if record else None
            token = self._token
            listeners = list(self._listeners.values())
            record_copy = self.record

        for listener in listeners:
            try:
                listener(token, record_copy)
            except Exception:
                logger.exception("auth_store.listener_failed")

    def clear(self) -> None:
        self.save("", None)

    def on_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        with self._lock:
            self._next_id += 1
            listener_id = self._next_id
            self._listeners[listener_id] = listener

        def remove() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return remove
