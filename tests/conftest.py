"""Shared fakes for the bridge tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest

from z2m_bridge.events import EventBus
from z2m_bridge.exposes import Expose, parse_exposes
from z2m_bridge.host import LocalHostDevice
from z2m_bridge.mqtt_client import MqttStatus
from z2m_bridge.store import StateStore

MUTATING_OPS = ("add", "remove", "set_value", "set_options")


class FakeTransport:
    """In-memory stand-in for `MqttClient`."""

    def __init__(self, *, connected: bool = True) -> None:
        self.connected = connected
        self.published: list[tuple[str, Any]] = []
        self.subscriptions: set[str] = set()
        self.message_handler: Callable[[str, str], None] | None = None
        self.connect_handler: Callable[[bool], None] | None = None
        self.connect_calls = 0

    def set_message_handler(self, handler: Callable[[str, str], None] | None) -> None:
        self.message_handler = handler

    def set_connect_handler(self, handler: Callable[[bool], None] | None) -> None:
        self.connect_handler = handler

    def status(self) -> MqttStatus:
        return MqttStatus(connected=self.connected, last_error=None)

    def connect(self) -> None:
        self.connect_calls += 1

    def disconnect(self) -> None:
        self.connected = False

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> None:
        self.published.append((topic, payload))

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        self.subscriptions.add(topic)

    def unsubscribe(self, topic: str) -> None:
        self.subscriptions.discard(topic)

    def published_to(self, topic: str) -> list[Any]:
        return [p for t, p in self.published if t == topic]


class RecordingHost(LocalHostDevice):
    """Local host that records every call and can fail selected mutations."""

    def __init__(self, *, fail: set[tuple[str, str]] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.calls: list[tuple[str, Any]] = []
        self.fail = fail or set()

    def _record(self, op: str, name: Any) -> None:
        self.calls.append((op, name))
        if (op, name) in self.fail:
            raise RuntimeError(f"host refused {op} {name}")

    def mutations(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] in MUTATING_OPS]

    async def add_capability(self, name: str) -> None:
        self._record("add", name)
        await super().add_capability(name)

    async def remove_capability(self, name: str) -> None:
        self._record("remove", name)
        await super().remove_capability(name)

    async def set_capability_value(self, name: str, value: Any) -> None:
        self._record("set_value", name)
        await super().set_capability_value(name, value)

    async def set_capability_options(self, name: str, options: dict[str, Any]) -> None:
        self._record("set_options", name)
        await super().set_capability_options(name, options)

    async def set_available(self) -> None:
        self.calls.append(("available", None))
        await super().set_available()

    async def set_unavailable(self, reason: str) -> None:
        self.calls.append(("unavailable", reason))
        await super().set_unavailable(reason)


def device_entry(
    ieee: str,
    friendly_name: str,
    exposes: list[dict[str, Any]],
    *,
    model: str = "TEST-1",
    description: str = "Test light",
    power_source: str = "Mains (single phase)",
) -> dict[str, Any]:
    return {
        "ieee_address": ieee,
        "friendly_name": friendly_name,
        "type": "Router",
        "power_source": power_source,
        "definition": {"model": model, "vendor": "Acme", "description": description, "exposes": exposes},
    }


LIGHT_EXPOSES_RAW: list[dict[str, Any]] = [
    {
        "type": "light",
        "features": [
            {"type": "binary", "name": "state", "property": "state", "access": 7, "value_on": "ON", "value_off": "OFF"},
            {"type": "numeric", "name": "brightness", "property": "brightness", "access": 7},
        ],
    },
    {"type": "numeric", "name": "linkquality", "property": "linkquality", "access": 1, "unit": "lqi"},
]


def light_exposes() -> list[Expose]:
    return parse_exposes(LIGHT_EXPOSES_RAW)


def devices_payload(*entries: dict[str, Any]) -> str:
    return json.dumps([{"ieee_address": "0x0", "friendly_name": "Coordinator", "type": "Coordinator"}, *entries])


async def drain(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0.01)


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(str(tmp_path / "state.json"))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
