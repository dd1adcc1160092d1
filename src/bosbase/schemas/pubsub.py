"""Pydantic schemas for pub/sub frames handed to callers."""

from typing import Any

from pydantic import BaseModel


class PubSubMessage(BaseModel):
    """A `message` frame delivered to topic listeners."""

    id: str = ""
    topic: str
    created: str = ""
    data: Any = None


class PublishAck(BaseModel):
    """The server's confirmation of a publish."""

    id: str = ""
    topic: str
    created: str = ""
