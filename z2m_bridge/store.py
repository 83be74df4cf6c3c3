from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from .models import KIND_DEVICE, KIND_GROUP, DeviceStore

_LOGGER = logging.getLogger("z2m_bridge.store")


class StateStore:
    """JSON state file holding one record per device instance.

    Record layout::

        {"kind": "device", "settings": {...}, "store": {...}, "values": {...}}

    `store` is the persisted capability mapping (`DeviceStore`), `values` the
    last capability values seen for the instance.
    """

    def __init__(self, path: str = "/data/state.json"):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def read_raw(self) -> dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            raw = {"devices": {}}
        except (json.JSONDecodeError, ValueError):
            # keep the corrupt file for debugging and start from an empty state
            try:
                ts = time.strftime("%Y%m%d-%H%M%S")
                os.replace(self._path, f"{self._path}.corrupt.{ts}")
                _LOGGER.warning("State file %s was corrupt, moved aside", self._path)
            except OSError:
                _LOGGER.exception("Cannot move corrupt state file %s", self._path)
            raw = {"devices": {}}

        if not isinstance(raw, dict):
            raw = {"devices": {}}
        if not isinstance(raw.get("devices"), dict):
            raw["devices"] = {}
        return raw

    def write_raw(self, state: dict[str, Any]) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self._path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)

    @staticmethod
    def _normalize_instance(uid: str, record: Any) -> dict[str, Any]:
        if not isinstance(record, dict):
            record = {}
        kind = str(record.get("kind") or KIND_DEVICE).strip().lower()
        if kind not in (KIND_DEVICE, KIND_GROUP):
            kind = KIND_DEVICE
        settings = record.get("settings")
        if not isinstance(settings, dict):
            settings = {}
        settings.setdefault("uid", uid)
        settings.setdefault("friendly_name", "")
        values = record.get("values")
        host = record.get("host")
        if not isinstance(host, dict):
            host = {}
        if not isinstance(host.get("capabilities"), list):
            host["capabilities"] = []
        if not isinstance(host.get("options"), dict):
            host["options"] = {}
        return {
            "kind": kind,
            "settings": settings,
            "store": record.get("store") if isinstance(record.get("store"), dict) else None,
            "values": values if isinstance(values, dict) else {},
            "host": host,
        }

    def list_instances(self) -> list[dict[str, Any]]:
        devices = self.read_raw()["devices"]
        return [{"uid": uid, **self._normalize_instance(uid, rec)} for uid, rec in devices.items()]

    def get_instance(self, uid: str) -> dict[str, Any] | None:
        rec = self.read_raw()["devices"].get(uid)
        if rec is None:
            return None
        return {"uid": uid, **self._normalize_instance(uid, rec)}

    def add_instance(self, *, uid: str, kind: str = KIND_DEVICE, settings: dict[str, Any] | None = None) -> dict[str, Any]:
        raw = self.read_raw()
        existing = raw["devices"].get(uid)
        if existing is not None:
            return {"uid": uid, **self._normalize_instance(uid, existing)}
        rec = self._normalize_instance(uid, {"kind": kind, "settings": dict(settings or {})})
        raw["devices"][uid] = rec
        self.write_raw(raw)
        return {"uid": uid, **rec}

    def delete_instance(self, uid: str) -> bool:
        raw = self.read_raw()
        if uid not in raw["devices"]:
            return False
        del raw["devices"][uid]
        self.write_raw(raw)
        return True

    def get_settings(self, uid: str) -> dict[str, Any]:
        inst = self.get_instance(uid)
        return dict(inst["settings"]) if inst else {}

    def update_settings(self, uid: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        raw = self.read_raw()
        rec = raw["devices"].get(uid)
        if rec is None:
            return None
        rec = self._normalize_instance(uid, rec)
        rec["settings"].update(updates)
        raw["devices"][uid] = rec
        self.write_raw(raw)
        return dict(rec["settings"])

    def get_device_store(self, uid: str) -> DeviceStore | None:
        inst = self.get_instance(uid)
        if not inst or inst["store"] is None:
            return None
        return DeviceStore.from_dict(inst["store"])

    def set_device_store(self, uid: str, store: DeviceStore) -> None:
        # whole-record replacement; readers never see a half written table
        raw = self.read_raw()
        rec = self._normalize_instance(uid, raw["devices"].get(uid))
        rec["store"] = store.to_dict()
        raw["devices"][uid] = rec
        self.write_raw(raw)

    def get_host_state(self, uid: str) -> dict[str, Any]:
        inst = self.get_instance(uid)
        if not inst:
            return {"capabilities": [], "options": {}}
        return inst["host"]

    def set_host_state(self, uid: str, *, capabilities: list[str], options: dict[str, Any]) -> None:
        raw = self.read_raw()
        rec = raw["devices"].get(uid)
        if rec is None:
            return
        rec = self._normalize_instance(uid, rec)
        rec["host"] = {"capabilities": list(capabilities), "options": dict(options)}
        raw["devices"][uid] = rec
        self.write_raw(raw)

    def get_capability_values(self, uid: str) -> dict[str, Any]:
        inst = self.get_instance(uid)
        return dict(inst["values"]) if inst else {}

    def set_capability_value(self, uid: str, capability: str, value: Any) -> None:
        raw = self.read_raw()
        rec = raw["devices"].get(uid)
        if rec is None:
            return
        rec = self._normalize_instance(uid, rec)
        if rec["values"].get(capability) == value:
            return
        rec["values"][capability] = value
        raw["devices"][uid] = rec
        self.write_raw(raw)
