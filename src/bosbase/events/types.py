"""Event and frame type constants.

Learn: these names are fixed by the server. The SSE handshake event and
the `@oauth2` topic come from the realtime endpoint; the frame types are
the `type` field of every JSON frame on the pub/sub socket.
"""

# ─── Realtime (SSE) ──────────────────────────────────────

REALTIME_PATH = "/api/realtime"
CONNECT_EVENT = "PB_CONNECT"  # handshake, carries {"clientId": ...}
DEFAULT_EVENT = "message"  # SSE name when no `event:` field was sent
OAUTH2_TOPIC = "@oauth2"

# ─── REST ────────────────────────────────────────────────

BATCH_PATH = "/api/batch"
EXTERNAL_AUTHS_COLLECTION = "_externalAuths"

# ─── Pub/sub (WebSocket) ─────────────────────────────────

PUBSUB_PATH = "/api/pubsub"

# client → server
PUBLISH = "publish"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
PING = "ping"

# server → client
READY = "ready"
MESSAGE = "message"
PUBLISHED = "published"
SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"
PONG = "pong"
ERROR = "error"

ACK_TYPES = frozenset({PUBLISHED, SUBSCRIBED, UNSUBSCRIBED, PONG})
