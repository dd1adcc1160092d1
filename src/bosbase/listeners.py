"""Callback invocation shared by the realtime and pub/sub managers.

Learn: listeners are user code running inside our receive loops. Each
call is its own error boundary, so one failing listener neither stops
its siblings from receiving the event nor kills the connection.
A slow listener still stalls the loop: dispatch is sequential so that
events reach listeners in the order the server sent them.
"""

import inspect
from typing import Any, Callable

import structlog

logger = structlog.get_logger()


async def call_listener(
    callback: Callable[[Any], Any],
    payload: Any,
    log_event: str,
    **log_context: Any,
) -> None:
    """Invoke a sync or async callback, logging instead of raising."""
    try:
        result = callback(payload)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(log_event, **log_context)
