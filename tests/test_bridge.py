"""Tests for gateway directory and liveness handling."""

from __future__ import annotations

import json

import pytest
from conftest import LIGHT_EXPOSES_RAW, FakeTransport, device_entry, devices_payload

from z2m_bridge.bridge import Bridge, parse_state
from z2m_bridge.errors import ConnectivityError
from z2m_bridge.events import BRIDGE_SUBJECT, EventBus, LivenessChanged, SchemaChanged, Topic


def _bridge(bus: EventBus, transport: FakeTransport) -> Bridge:
    return Bridge(client=transport, base_topic="zigbee2mqtt", bus=bus)


def _record(bus: EventBus, topic: Topic) -> list[object]:
    seen: list[object] = []
    bus.subscribe(topic, seen.append)
    return seen


def test_parse_state_accepts_json_and_bare_words() -> None:
    assert parse_state('{"state": "online"}') == "online"
    assert parse_state("offline") == "offline"
    assert parse_state("  ONLINE ") == "online"
    assert parse_state("") is None
    assert parse_state("{broken") is None
    assert parse_state("maybe") is None


@pytest.mark.asyncio
async def test_device_list_populates_directory(bus, transport) -> None:
    bridge = _bridge(bus, transport)
    seen = _record(bus, Topic.SCHEMA_CHANGED)

    await bridge.handle_message("zigbee2mqtt/bridge/devices", devices_payload(device_entry("0x1", "lamp", LIGHT_EXPOSES_RAW)))

    assert list(bridge.devices) == ["0x1"]
    assert seen == [SchemaChanged(kind="device")]
    source = bridge.lookup_device("0x1")
    assert source is not None
    assert source.friendly_name == "lamp"
    assert source.model == "TEST-1"
    assert not source.is_group


@pytest.mark.asyncio
async def test_device_without_definition_has_no_schema(bus, transport) -> None:
    bridge = _bridge(bus, transport)
    entry = {"ieee_address": "0x2", "friendly_name": "new", "type": "EndDevice"}
    await bridge.handle_message("zigbee2mqtt/bridge/devices", json.dumps([entry]))
    assert "0x2" in bridge.devices
    assert bridge.lookup_device("0x2") is None


@pytest.mark.asyncio
async def test_availability_survives_list_refresh(bus, transport) -> None:
    bridge = _bridge(bus, transport)
    seen = _record(bus, Topic.LIVENESS_CHANGED)
    payload = devices_payload(device_entry("0x1", "lamp", LIGHT_EXPOSES_RAW))
    await bridge.handle_message("zigbee2mqtt/bridge/devices", payload)

    await bridge.handle_message("zigbee2mqtt/lamp/availability", '{"state": "offline"}')
    await bridge.handle_message("zigbee2mqtt/lamp/availability", "offline")
    await bridge.handle_message("zigbee2mqtt/bridge/devices", payload)

    assert seen == [LivenessChanged(subject="0x1", online=False)]
    assert bridge.lookup_device("0x1").availability == "offline"


@pytest.mark.asyncio
async def test_bridge_state_and_connection_drive_liveness(bus, transport) -> None:
    bridge = _bridge(bus, transport)
    seen = _record(bus, Topic.LIVENESS_CHANGED)

    bridge.set_mqtt_connected(True)
    await bridge.handle_message("zigbee2mqtt/bridge/state", '{"state": "online"}')
    await bridge.handle_message("zigbee2mqtt/bridge/state", "offline")
    await bridge.handle_message("zigbee2mqtt/bridge/state", "online")
    bridge.set_mqtt_connected(False)

    assert [e.online for e in seen] == [True, False, True, False]
    assert all(e.subject == BRIDGE_SUBJECT for e in seen)


@pytest.mark.asyncio
async def test_group_uses_first_defined_member(bus, transport) -> None:
    bridge = _bridge(bus, transport)
    bare = {"ieee_address": "0x9", "friendly_name": "bare", "type": "EndDevice"}
    await bridge.handle_message(
        "zigbee2mqtt/bridge/devices",
        devices_payload(bare, device_entry("0x1", "lamp", LIGHT_EXPOSES_RAW)),
    )
    groups = [{"id": 3, "friendly_name": "living", "members": [{"ieee_address": "0x9"}, {"ieee_address": "0x1"}]}]
    await bridge.handle_message("zigbee2mqtt/bridge/groups", json.dumps(groups))

    source = bridge.lookup_group("3")
    assert source is not None
    assert source.is_group
    assert source.friendly_name == "living"
    assert [e.property for e in source.exposes][-1] == "linkquality"
    assert bridge.lookup("3", "group") == source


@pytest.mark.asyncio
async def test_device_topics_go_to_registered_handlers(bus, transport) -> None:
    bridge = _bridge(bus, transport)
    got: list[str] = []

    async def _handler(payload: str) -> None:
        got.append(payload)

    bridge.register("zigbee2mqtt/lamp", _handler)
    assert "zigbee2mqtt/lamp" in transport.subscriptions
    await bridge.handle_message("zigbee2mqtt/lamp", '{"state": "ON"}')
    await bridge.handle_message("other/lamp", '{"state": "OFF"}')
    bridge.unregister("zigbee2mqtt/lamp", _handler)
    await bridge.handle_message("zigbee2mqtt/lamp", '{"state": "OFF"}')

    assert got == ['{"state": "ON"}']
    assert "zigbee2mqtt/lamp" not in transport.subscriptions


def test_publish_requires_connection(bus) -> None:
    transport = FakeTransport(connected=False)
    bridge = _bridge(bus, transport)
    with pytest.raises(ConnectivityError):
        bridge.publish("zigbee2mqtt/lamp/set", {"state": "ON"})
    transport.connected = True
    bridge.publish(bridge.device_topic("lamp", "set"), {"state": "ON"})
    assert transport.published == [("zigbee2mqtt/lamp/set", {"state": "ON"})]
