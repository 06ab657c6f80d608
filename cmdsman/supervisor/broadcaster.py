"""Per-command publish/subscribe fan-out for log chunks and lifecycle events."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("cmdsman.supervisor.broadcaster")

EVENT_JOINED = "joined"
EVENT_LOG_CHUNK = "log-chunk"
EVENT_LOG_RESET = "log-reset"
EVENT_STATUS = "status"
EVENT_LEFT = "left-subscription"

DEFAULT_MAX_EMITS = 10000
MAX_EMITS_REASON = "You reached the max log emits"


@dataclass(frozen=True)
class BroadcastEvent:
    event: str
    data: Any = None


@dataclass(eq=False)
class Subscription:
    """One subscriber's queue on a topic; `emitted` counts delivered events."""

    id: int
    topic: str
    max_emits: int
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    emitted: int = 0
    active: bool = True


class EventBroadcaster:
    """Topics are command ids; subscriptions leave themselves after `max_emits` events."""

    def __init__(self, max_emits: int = DEFAULT_MAX_EMITS):
        self.max_emits = max_emits
        self._topics: dict[str, list[Subscription]] = {}
        self._ids = itertools.count(1)

    def join(self, topic: str) -> Subscription:
        subscription = Subscription(id=next(self._ids), topic=topic, max_emits=self.max_emits)
        self._topics.setdefault(topic, []).append(subscription)
        subscription.queue.put_nowait(BroadcastEvent(EVENT_JOINED, f"Joined to room '{topic}'"))
        logger.info("Subscription %d joined '%s'", subscription.id, topic)
        return subscription

    def leave(self, subscription: Subscription, reason: str | None = None) -> None:
        """Detach a subscription; with a reason the subscriber is told why."""
        if not subscription.active:
            return
        subscription.active = False
        subscribers = self._topics.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._topics.pop(subscription.topic, None)
        if reason is not None:
            subscription.queue.put_nowait(BroadcastEvent(EVENT_LEFT, reason))
        logger.info(
            "Subscription %d left '%s'%s",
            subscription.id,
            subscription.topic,
            f" - {reason}" if reason else "",
        )

    def publish(self, topic: str, event: str, data: Any = None) -> int:
        """Deliver one event to every subscriber of `topic`; returns the fan-out count."""
        subscribers = list(self._topics.get(topic, []))
        message = BroadcastEvent(event, data)
        for subscription in subscribers:
            subscription.queue.put_nowait(message)
            subscription.emitted += 1
            if subscription.emitted >= subscription.max_emits:
                self.leave(subscription, MAX_EMITS_REASON)
        return len(subscribers)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))
