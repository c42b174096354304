"""
EventSub envelope decoding

Maps raw WebSocket messages to RawNotification envelopes and notification
payloads to DomainEvents. Everything here is pure.
"""

from __future__ import annotations

import json
from typing import Optional, Union

from livecount.schemas.events import DomainEvent, EventKind, RawNotification

FOLLOW_TOPIC = "channel.follow"
SUBSCRIBE_TOPIC = "channel.subscribe"

TOPIC_KINDS = {
    FOLLOW_TOPIC: EventKind.FOLLOWER,
    SUBSCRIBE_TOPIC: EventKind.SUBSCRIBER,
}


def parse_message(raw: Union[str, bytes]) -> RawNotification:
    """Parse one WebSocket text frame. Raises ValueError on malformed input."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("EventSub message is not a JSON object")
    return RawNotification.model_validate(data)


def decode(notification: RawNotification) -> Optional[DomainEvent]:
    """Return the DomainEvent for a follow/subscribe notification, else None."""
    payload = notification.payload
    topic = (payload.get("subscription") or {}).get("type")
    kind = TOPIC_KINDS.get(topic)
    if kind is None:
        return None

    event = payload.get("event") or {}
    user_id = event.get("user_id")
    if not user_id:
        return None

    return DomainEvent(
        kind=kind,
        user_id=str(user_id),
        user_name=event.get("user_name"),
        topic=topic,
        message_id=notification.metadata.message_id,
        timestamp=notification.metadata.message_timestamp,
    )
