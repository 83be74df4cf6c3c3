"""Tests for the JSON state file."""

from __future__ import annotations

import os

from conftest import light_exposes

from z2m_bridge.capability_map import resolve
from z2m_bridge.models import STORE_VERSION, DeviceStore, table_to_dict
from z2m_bridge.store import StateStore


def test_missing_file_reads_as_empty(tmp_path) -> None:
    store = StateStore(str(tmp_path / "nope" / "state.json"))
    assert store.read_raw() == {"devices": {}}
    assert store.list_instances() == []


def test_corrupt_file_is_moved_aside(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = StateStore(str(path))

    assert store.read_raw() == {"devices": {}}
    assert not path.exists()
    assert any(name.startswith("state.json.corrupt.") for name in os.listdir(tmp_path))


def test_instance_lifecycle(store) -> None:
    rec = store.add_instance(uid="0x1", kind="group", settings={"friendly_name": "living"})
    assert rec["kind"] == "group"
    assert store.add_instance(uid="0x1", kind="device")["kind"] == "group"

    store.update_settings("0x1", {"friendly_name": "lounge"})
    assert store.get_settings("0x1")["friendly_name"] == "lounge"
    assert [i["uid"] for i in store.list_instances()] == ["0x1"]

    assert store.delete_instance("0x1")
    assert not store.delete_instance("0x1")
    assert store.get_instance("0x1") is None


def test_device_store_round_trip(store) -> None:
    store.add_instance(uid="0x1")
    table = resolve(light_exposes())
    store.set_device_store("0x1", DeviceStore(capability_mapping_table=table_to_dict(table), store_version=STORE_VERSION))

    loaded = store.get_device_store("0x1")

    assert loaded is not None
    assert loaded.matches(table)
    assert loaded.table == table
    assert not loaded.matches(table, STORE_VERSION + 1)


def test_unchanged_value_is_not_rewritten(store, monkeypatch) -> None:
    store.add_instance(uid="0x1")
    writes: list[dict] = []
    original = store.write_raw

    def _count(state: dict) -> None:
        writes.append(state)
        original(state)

    monkeypatch.setattr(store, "write_raw", _count)
    store.set_capability_value("0x1", "onoff", True)
    store.set_capability_value("0x1", "onoff", True)
    store.set_capability_value("0x2", "onoff", True)

    assert len(writes) == 1
    assert store.get_capability_values("0x1") == {"onoff": True}


def test_write_leaves_no_temporary_file(store) -> None:
    store.add_instance(uid="0x1")
    assert os.path.exists(store.path)
    assert not os.path.exists(store.path + ".tmp")
