"""Tests for add-on options parsing."""

from __future__ import annotations

import json

from z2m_bridge.settings import InstanceConfig, load_settings, read_options


def test_defaults_for_empty_options() -> None:
    s = load_settings({})
    assert s.mqtt.host == "core-mosquitto"
    assert s.mqtt.port == 1883
    assert s.mqtt.base_topic == "zigbee2mqtt"
    assert s.mqtt.client_id == "z2m-homey-bridge"
    assert s.migration.settling_delay_s == 2.0
    assert s.migration.debounce_s == 0.5
    assert s.migration.retry_delay_s == 60.0
    assert s.devices == ()
    assert s.http_port == 8099
    assert not s.auto_add


def test_invalid_numbers_fall_back_and_clamp() -> None:
    s = load_settings(
        {
            "mqtt": {"port": "abc", "base_topic": "z2m/"},
            "migration": {"settling_delay_s": "x", "debounce_s": -3, "retry_delay_s": 0},
        }
    )
    assert s.mqtt.port == 1883
    assert s.mqtt.base_topic == "z2m"
    assert s.migration.settling_delay_s == 2.0
    assert s.migration.debounce_s == 0.0
    assert s.migration.retry_delay_s == 1.0


def test_device_list_accepts_strings_and_objects() -> None:
    s = load_settings({"devices": ["0x1", {"uid": "7", "kind": "GROUP"}, {"uid": "0x1"}, {"kind": "device"}, 5]})
    assert s.devices == (InstanceConfig(uid="0x1", kind="device"), InstanceConfig(uid="7", kind="group"))


def test_read_options_from_env_path(tmp_path, monkeypatch) -> None:
    path = tmp_path / "options.json"
    path.write_text(json.dumps({"debug": True}), encoding="utf-8")
    monkeypatch.setenv("Z2M_BRIDGE_OPTIONS", str(path))
    assert read_options() == {"debug": True}

    monkeypatch.setenv("Z2M_BRIDGE_OPTIONS", str(tmp_path / "missing.json"))
    assert read_options() == {}
