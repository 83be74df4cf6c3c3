"""Tests for the bridged device lifecycle."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import LIGHT_EXPOSES_RAW, RecordingHost, device_entry, devices_payload, drain

from z2m_bridge.bridge import Bridge
from z2m_bridge.device import BridgedDevice
from z2m_bridge.errors import ConnectivityError, NotSettableError, StaleStoreError, UnmappedPropertyError
from z2m_bridge.events import Topic
from z2m_bridge.migration import MigrationState
from z2m_bridge.settings import MigrationConfig

UID = "0x1"
FAST = MigrationConfig(settling_delay_s=0.0, debounce_s=0.0, restart_delay_s=0.0, retry_delay_s=1.0)


class HeldSettle:
    """Settle wait that blocks until released once `hold` is set."""

    def __init__(self) -> None:
        self.hold = False
        self.waiting = asyncio.Event()
        self.release = asyncio.Event()

    async def wait(self, reason: str) -> None:
        if not self.hold:
            return
        self.waiting.set()
        await self.release.wait()


def _setup(store, bus, transport, *, uid: str = UID, kind: str = "device", name: str = "lamp", settle=None):
    bridge = Bridge(client=transport, base_topic="zigbee2mqtt", bus=bus)
    store.add_instance(uid=uid, kind=kind, settings={"friendly_name": name})
    host = RecordingHost(uid=uid, name=name, store=store)
    device = BridgedDevice(uid=uid, kind=kind, bridge=bridge, bus=bus, host=host, store=store, config=FAST, settle=settle)
    return bridge, host, device


async def _publish_devices(bridge: Bridge, *entries) -> None:
    await bridge.handle_message("zigbee2mqtt/bridge/devices", devices_payload(*entries))


@pytest.mark.asyncio
async def test_start_migrates_restarts_once_and_becomes_ready(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))

    await device.start()
    await drain()

    assert device.engine.state is MigrationState.READY
    assert await host.list_capabilities() == ["onoff", "dim", "measure_linkquality"]
    assert host.available
    assert device.listeners_registered
    assert transport.published_to("zigbee2mqtt/lamp/get") == [{"state": ""}]
    assert "zigbee2mqtt/lamp" in transport.subscriptions


@pytest.mark.asyncio
async def test_state_messages_and_commands_flow_through(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    await bridge.handle_message("zigbee2mqtt/lamp", '{"state": "ON", "brightness": 127}')
    assert await host.get_capability_value("onoff") is True
    assert await host.get_capability_value("dim") == 0.5

    await host.user_set("onoff", False)
    assert transport.published_to("zigbee2mqtt/lamp/set") == [{"state": "OFF"}]

    with pytest.raises(NotSettableError):
        await device.set_command({"linkquality": 10}, "test")
    await device.set_command({"brightness": 10}, "test")
    await device.set_custom_payload('{"effect": "blink"}', "test")
    assert transport.published_to("zigbee2mqtt/lamp/set")[-2:] == [{"brightness": 10}, '{"effect": "blink"}']


@pytest.mark.asyncio
async def test_missing_device_waits_for_directory(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)

    await device.start()
    assert not host.available
    assert host.unavailable_reason == "Device went missing in Zigbee2MQTT"

    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await drain()

    assert device.engine.state is MigrationState.READY
    assert host.available


@pytest.mark.asyncio
async def test_device_removed_upstream_goes_unavailable(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    await _publish_devices(bridge)
    await drain()

    assert host.unavailable_reason == "Device went missing in Zigbee2MQTT"


@pytest.mark.asyncio
async def test_rename_upstream_restarts_under_new_name(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    await _publish_devices(bridge, device_entry(UID, "desk lamp", LIGHT_EXPOSES_RAW))
    await drain()

    assert device.friendly_name == "desk lamp"
    assert store.get_settings(UID)["friendly_name"] == "desk lamp"
    assert "zigbee2mqtt/desk lamp" in transport.subscriptions
    assert "zigbee2mqtt/lamp" not in transport.subscriptions
    assert device.engine.state is MigrationState.READY


@pytest.mark.asyncio
async def test_schema_drift_adds_new_capability(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    extra = {"type": "numeric", "name": "power", "property": "power", "access": 1, "unit": "W"}
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW + [extra]))
    await drain()

    assert "measure_power" in await host.list_capabilities()
    assert device.engine.state is MigrationState.READY
    assert (await host.get_capability_options("measure_power"))["units"] == "W"


@pytest.mark.asyncio
async def test_bridge_offline_and_back(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    bridge.set_mqtt_connected(True)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    await bridge.handle_message("zigbee2mqtt/bridge/state", '{"state": "offline"}')
    await drain()
    assert host.unavailable_reason == "Bridge is offline"

    await bridge.handle_message("zigbee2mqtt/bridge/state", '{"state": "online"}')
    await drain()
    assert host.available
    assert device.engine.state is MigrationState.READY


@pytest.mark.asyncio
async def test_device_availability_topic(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    await bridge.handle_message("zigbee2mqtt/lamp/availability", "offline")
    await drain()
    assert host.unavailable_reason == "Device is offline"

    await bridge.handle_message("zigbee2mqtt/lamp/availability", '{"state": "online"}')
    await drain()
    assert host.available


@pytest.mark.asyncio
async def test_battery_device_is_not_polled(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW, power_source="Battery"))
    await device.start()
    await drain()

    assert transport.published_to("zigbee2mqtt/lamp/get") == []
    assert await device.get_status({"state": ""}, "test") is False


@pytest.mark.asyncio
async def test_commands_need_mqtt(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    transport.connected = False
    with pytest.raises(ConnectivityError):
        await device.get_status({"state": ""}, "test")
    with pytest.raises(ConnectivityError):
        await device.set_custom_payload("{}", "test")


@pytest.mark.asyncio
async def test_group_skips_link_quality(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport, uid="5", kind="group", name="living")
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    groups = [{"id": 5, "friendly_name": "living", "members": [{"ieee_address": UID}]}]
    await bridge.handle_message("zigbee2mqtt/bridge/groups", json.dumps(groups))

    await device.start()
    await drain()

    assert await host.list_capabilities() == ["onoff", "dim"]
    assert device.engine.state is MigrationState.READY


@pytest.mark.asyncio
async def test_restart_is_guarded_and_stop_cancels(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    assert device.restart(5.0)
    assert not device.restart(5.0)
    await device.stop()
    await drain()

    assert device.closed
    assert not device.listeners_registered
    assert bus.listener_count(Topic.SCHEMA_CHANGED) == 0
    assert bus.listener_count(Topic.LIVENESS_CHANGED) == 0


@pytest.mark.asyncio
async def test_flow_capability_command_sets_value(store, bus, transport) -> None:
    bridge, host, device = _setup(store, bus, transport)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()

    sent = await device.set_capability_command("dim", 0.5, "flow")

    assert sent == {"brightness": 127.0}
    assert transport.published_to("zigbee2mqtt/lamp/set") == [{"brightness": 127.0}]
    assert await host.get_capability_value("dim") == 0.5


@pytest.mark.asyncio
async def test_commands_rejected_while_schema_migrates(store, bus, transport) -> None:
    settle = HeldSettle()
    bridge, host, device = _setup(store, bus, transport, settle=settle)
    await _publish_devices(bridge, device_entry(UID, "lamp", LIGHT_EXPOSES_RAW))
    await device.start()
    await drain()
    assert device.is_store_current()

    settle.hold = True
    switch_only = [{"type": "light", "features": [LIGHT_EXPOSES_RAW[0]["features"][0]]}, LIGHT_EXPOSES_RAW[1]]
    await _publish_devices(bridge, device_entry(UID, "lamp", switch_only))
    await asyncio.wait_for(settle.waiting.wait(), 1.0)

    assert not device.is_store_current()
    with pytest.raises(StaleStoreError):
        await device.set_capability_command("dim", 0.5, "flow")
    with pytest.raises(StaleStoreError):
        await device.set_command({"brightness": 10}, "test")
    assert transport.published_to("zigbee2mqtt/lamp/set") == []

    settle.release.set()
    await drain()

    assert device.engine.state is MigrationState.READY
    assert device.is_store_current()
    assert await host.list_capabilities() == ["onoff", "measure_linkquality"]
    with pytest.raises(UnmappedPropertyError):
        await device.set_capability_command("dim", 0.5, "flow")
