"""Client configuration via environment variables.

Uses pydantic-settings to load config from env vars with BOSBASE_ prefix.
Every value can also be passed explicitly: BosBase(settings=Settings(...)).

Learn: the realtime backoff is a fixed table, not exponential growth.
Retries past the end of the table reuse the last delay, which keeps
reconnect latency predictable.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All client configuration. Set via BOSBASE_* env vars."""

    # Backend
    base_url: str = "http://127.0.0.1:8090"
    lang: str = "en-US"
    timeout: float = 30.0  # seconds, per REST request

    # Realtime (SSE)
    realtime_connect_timeout: float = 10.0
    realtime_backoff: list[float] = [0.2, 0.5, 1.0, 2.0, 5.0]

    # Pub/sub (WebSocket)
    pubsub_ack_timeout: float = 10.0
    pubsub_ready_timeout: float = 10.0

    # OAuth2 popup flow (driven by the realtime @oauth2 topic)
    oauth2_timeout: float = 180.0

    model_config = {"env_prefix": "BOSBASE_"}

    @field_validator("realtime_backoff")
    @classmethod
    def validate_backoff(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("realtime_backoff must contain at least one delay")
        if any(delay <= 0 for delay in value):
            raise ValueError("realtime_backoff delays must be positive")
        return value

    @field_validator(
        "timeout",
        "realtime_connect_timeout",
        "pubsub_ack_timeout",
        "pubsub_ready_timeout",
        "oauth2_timeout",
    )
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


# Singleton — used when a client is built without explicit settings
settings = Settings()
