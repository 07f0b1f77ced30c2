import json
import logging
from typing import Hashable, Set

from models.events import ExchangeComplete, LeadershipChanged

logger = logging.getLogger(__name__)


def event_identity(event) -> Hashable:
    """
    Identity of an inbound event for duplicate suppression.

    Exchange and leadership-change records are keyed by (kind, timestamp,
    subject) because a reconnect replay may echo them with extra fields.
    Everything else is keyed by its full decoded payload.
    """
    if isinstance(event, LeadershipChanged):
        p = event.payload
        subject = p.new_leader.id if p.new_leader else p.room_color.value
        return (event.type, p.timestamp, subject)

    if isinstance(event, ExchangeComplete):
        p = event.payload
        # One identity per round batch; individual records are deduplicated again
        # by (player, timestamp) when they land in history.
        stamps = sorted(r.timestamp for r in p.exchanges if r.timestamp)
        return (event.type, stamps[-1] if stamps else "", f"round:{p.round_number}")

    body = event.payload.model_dump(mode="json", by_alias=True) if event.payload is not None else None
    return (event.type, json.dumps(body, sort_keys=True, separators=(",", ":")))


class EventDeduplicator:
    """
    Remembers which event identities have been applied since the room was opened.
    Pure filter: never judges ordering, only exact repetition.
    """

    def __init__(self, room_code: str = ""):
        self.room_code = room_code
        self._seen: Set[Hashable] = set()

    def should_apply(self, event) -> bool:
        key = event_identity(event)
        if key in self._seen:
            logger.debug("[%s] Duplicate %s suppressed", self.room_code, event.type)
            return False
        self._seen.add(key)
        return True

    def forget(self, event) -> None:
        """Un-record an event whose application failed so a redelivery can retry it."""
        self._seen.discard(event_identity(event))

    def reset(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
