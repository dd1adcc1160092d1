"""Realtime infrastructure — one SSE stream, many logical topics.

Learn: the client keeps a single long-lived GET /api/realtime stream and
multiplexes every topic subscription over it:
1. The server opens with a PB_CONNECT event carrying our client id
2. We POST the full subscription set, tagged with that id
3. Events arrive named by subscription key and fan out to listeners

If the stream drops, the background loop reconnects on a fixed backoff
table and re-posts the subscription set once the new handshake arrives.
"""

from bosbase.realtime.service import ConnectionState, RealtimeService
from bosbase.realtime.sse import SSEEvent, SSEParser

__all__ = ["ConnectionState", "RealtimeService", "SSEEvent", "SSEParser"]
