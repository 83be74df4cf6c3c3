from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable

_LOGGER = logging.getLogger("z2m_bridge.events")


class Topic(str, enum.Enum):
    SCHEMA_CHANGED = "schema-changed"
    LIVENESS_CHANGED = "liveness-changed"


# subject of a liveness event that concerns the gateway itself
BRIDGE_SUBJECT = "bridge"


@dataclass(frozen=True)
class SchemaChanged:
    kind: str  # "device" or "group" list was refreshed


@dataclass(frozen=True)
class LivenessChanged:
    subject: str  # BRIDGE_SUBJECT or a device uid
    online: bool


Listener = Callable[[Any], None]


class Subscription:
    def __init__(self, bus: "EventBus", topic: Topic, listener: Listener) -> None:
        self._bus = bus
        self.topic = topic
        self.listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._bus._remove(self)


class EventBus:
    """Cross-device notifications, injected into every device instance.

    Delivery is synchronous and best-effort: events are not queued, and an
    event published while nobody listens on its topic is dropped.
    """

    def __init__(self) -> None:
        self._subs: dict[Topic, list[Subscription]] = {t: [] for t in Topic}

    def subscribe(self, topic: Topic, listener: Listener) -> Subscription:
        sub = Subscription(self, topic, listener)
        self._subs[topic].append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subs[sub.topic].remove(sub)
        except ValueError:
            pass

    def listener_count(self, topic: Topic) -> int:
        return len(self._subs[topic])

    def publish(self, topic: Topic, event: Any) -> int:
        delivered = 0
        for sub in list(self._subs[topic]):
            if not sub.active:
                continue
            try:
                sub.listener(event)
                delivered += 1
            except Exception:
                _LOGGER.exception("Listener for %s failed", topic.value)
        return delivered
