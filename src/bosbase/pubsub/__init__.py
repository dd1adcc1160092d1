"""Pub/sub infrastructure — topics over one WebSocket with request/ack correlation."""

from bosbase.pubsub.service import PubSubService

__all__ = ["PubSubService"]
