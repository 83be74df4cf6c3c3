from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

from .errors import ConnectivityError
from .events import BRIDGE_SUBJECT, EventBus, LivenessChanged, SchemaChanged, Topic
from .models import KIND_DEVICE, KIND_GROUP, DeviceDescriptor, GroupDescriptor, SchemaSource

_LOGGER = logging.getLogger("z2m_bridge.bridge")

TopicHandler = Callable[[str], Awaitable[None]]


class Transport(Protocol):
    """Subset of `MqttClient` the bridge relies on."""

    @property
    def connected(self) -> bool: ...

    def set_message_handler(self, handler: Callable[[str, str], None] | None) -> None: ...

    def set_connect_handler(self, handler: Callable[[bool], None] | None) -> None: ...

    def status(self) -> Any: ...

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> None: ...

    def subscribe(self, topic: str, *, qos: int = 0) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...


def parse_state(payload: str) -> str | None:
    """Read `online`/`offline` from a JSON object or a bare string."""
    text = (payload or "").strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            obj = json.loads(text)
        except ValueError:
            return None
        text = str(obj.get("state") or "") if isinstance(obj, dict) else ""
    text = text.strip().lower()
    return text if text in ("online", "offline") else None


class Bridge:
    """Zigbee2MQTT gateway seen from the bridge side.

    Keeps the device and group directories published under `<base>/bridge/`,
    turns bridge state, per-device availability and MQTT connectivity into
    liveness events, and dispatches device topics to registered handlers.
    """

    def __init__(self, *, client: Transport, base_topic: str, bus: EventBus) -> None:
        self._client = client
        self.base_topic = base_topic.rstrip("/")
        self._bus = bus
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handlers: dict[str, list[TopicHandler]] = {}

        self.devices: dict[str, DeviceDescriptor] = {}
        self.groups: dict[str, GroupDescriptor] = {}
        self.info: dict[str, Any] = {}
        self.bridge_state: str | None = None
        self.mqtt_connected = False
        self._online: bool | None = None

    # lifecycle

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._client.set_message_handler(self._on_mqtt_message)
        self._client.set_connect_handler(self._on_mqtt_connect)
        for suffix in ("bridge/devices", "bridge/groups", "bridge/state", "bridge/info", "+/availability"):
            self._client.subscribe(f"{self.base_topic}/{suffix}")
        self._client.connect()

    def stop(self) -> None:
        self._client.set_message_handler(None)
        self._client.set_connect_handler(None)
        self._client.disconnect()

    def _on_mqtt_message(self, topic: str, payload: str) -> None:
        # paho network thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.handle_message(topic, payload), loop)

    def _on_mqtt_connect(self, connected: bool) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.set_mqtt_connected, connected)

    # liveness

    @property
    def online(self) -> bool:
        return self.mqtt_connected and self.bridge_state != "offline"

    def _update_liveness(self) -> None:
        online = self.online
        if online == self._online:
            return
        self._online = online
        _LOGGER.info("Bridge is %s", "online" if online else "offline")
        self._bus.publish(Topic.LIVENESS_CHANGED, LivenessChanged(subject=BRIDGE_SUBJECT, online=online))

    def set_mqtt_connected(self, connected: bool) -> None:
        self.mqtt_connected = bool(connected)
        self._update_liveness()

    # inbound

    async def handle_message(self, topic: str, payload: str) -> None:
        prefix = self.base_topic + "/"
        if not topic.startswith(prefix):
            return
        rest = topic[len(prefix):]

        if rest == "bridge/devices":
            self._load_devices(payload)
        elif rest == "bridge/groups":
            self._load_groups(payload)
        elif rest == "bridge/state":
            state = parse_state(payload)
            if state is not None:
                self.bridge_state = state
                self._update_liveness()
        elif rest == "bridge/info":
            try:
                info = json.loads(payload or "{}")
            except ValueError:
                info = {}
            self.info = info if isinstance(info, dict) else {}
        elif rest.startswith("bridge/"):
            return
        elif rest.endswith("/availability"):
            self._apply_availability(rest[: -len("/availability")], payload)
        else:
            await self._dispatch(topic, payload)

    def _load_devices(self, payload: str) -> None:
        try:
            raw = json.loads(payload or "[]")
        except ValueError:
            _LOGGER.warning("Invalid bridge/devices payload")
            return
        previous = self.devices
        devices: dict[str, DeviceDescriptor] = {}
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict):
                continue
            desc = DeviceDescriptor.from_dict(item)
            if not desc.uid or desc.type == "Coordinator":
                continue
            # availability arrives on its own topic; keep it across list refreshes
            old = previous.get(desc.uid)
            if old is not None:
                desc.availability = old.availability
            devices[desc.uid] = desc
        self.devices = devices
        _LOGGER.debug("Bridge lists %d devices", len(devices))
        self._bus.publish(Topic.SCHEMA_CHANGED, SchemaChanged(kind=KIND_DEVICE))

    def _load_groups(self, payload: str) -> None:
        try:
            raw = json.loads(payload or "[]")
        except ValueError:
            _LOGGER.warning("Invalid bridge/groups payload")
            return
        groups: dict[str, GroupDescriptor] = {}
        for item in raw if isinstance(raw, list) else []:
            if isinstance(item, dict):
                group = GroupDescriptor.from_dict(item)
                if group.id:
                    groups[group.id] = group
        self.groups = groups
        _LOGGER.debug("Bridge lists %d groups", len(groups))
        self._bus.publish(Topic.SCHEMA_CHANGED, SchemaChanged(kind=KIND_GROUP))

    def _apply_availability(self, friendly_name: str, payload: str) -> None:
        state = parse_state(payload)
        desc = self.find_device(friendly_name)
        if state is None or desc is None:
            return
        if desc.availability == state:
            return
        desc.availability = state  # type: ignore[assignment]
        self._bus.publish(Topic.LIVENESS_CHANGED, LivenessChanged(subject=desc.uid, online=state == "online"))

    async def _dispatch(self, topic: str, payload: str) -> None:
        for handler in list(self._handlers.get(topic, ())):
            try:
                await handler(payload)
            except Exception:
                _LOGGER.exception("Handler for %s failed", topic)

    # directory

    def find_device(self, friendly_name: str) -> DeviceDescriptor | None:
        for desc in self.devices.values():
            if desc.friendly_name == friendly_name:
                return desc
        return None

    def lookup_device(self, uid: str) -> SchemaSource | None:
        desc = self.devices.get(uid)
        if desc is None or not desc.has_definition:
            return None
        return SchemaSource(
            uid=desc.uid,
            kind=KIND_DEVICE,
            friendly_name=desc.friendly_name,
            model=desc.model_key,
            description=desc.description,
            power_source=desc.power_source,
            exposes=list(desc.exposes),
            availability=desc.availability,
        )

    def lookup_group(self, group_id: str) -> SchemaSource | None:
        group = self.groups.get(str(group_id))
        if group is None:
            return None
        # a group exposes what its first defined member exposes
        for member in group.members:
            desc = self.devices.get(member)
            if desc is not None and desc.has_definition:
                return SchemaSource(
                    uid=group.id,
                    kind=KIND_GROUP,
                    friendly_name=group.friendly_name,
                    model=desc.model_key,
                    description=desc.description,
                    exposes=list(desc.exposes),
                )
        return None

    def lookup(self, uid: str, kind: str) -> SchemaSource | None:
        return self.lookup_group(uid) if kind == KIND_GROUP else self.lookup_device(uid)

    # outbound

    def register(self, topic: str, handler: TopicHandler) -> None:
        handlers = self._handlers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)
        self._client.subscribe(topic)

    def unregister(self, topic: str, handler: TopicHandler) -> None:
        handlers = self._handlers.get(topic)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._handlers[topic]
            self._client.unsubscribe(topic)

    def device_topic(self, friendly_name: str, suffix: str = "") -> str:
        topic = f"{self.base_topic}/{friendly_name}"
        return f"{topic}/{suffix}" if suffix else topic

    def publish(self, topic: str, payload: Any) -> None:
        if not self._client.connected:
            raise ConnectivityError("MQTT not connected")
        _LOGGER.debug("Publish %s %s", topic, payload)
        self._client.publish(topic, payload)

    def snapshot(self) -> dict[str, Any]:
        return {
            "mqtt_connected": self.mqtt_connected,
            "bridge_state": self.bridge_state,
            "online": self.online,
            "devices": len(self.devices),
            "groups": len(self.groups),
            "version": self.info.get("version"),
        }
