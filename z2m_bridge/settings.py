from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from .models import KIND_DEVICE, KIND_GROUP


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    username: str
    password: str
    base_topic: str
    client_id: str


@dataclass(frozen=True)
class MigrationConfig:
    settling_delay_s: float = 2.0
    debounce_s: float = 0.5
    restart_delay_s: float = 1.0
    retry_delay_s: float = 60.0
    init_delay_s: float = 0.0


@dataclass(frozen=True)
class InstanceConfig:
    uid: str
    kind: str = KIND_DEVICE


@dataclass(frozen=True)
class Settings:
    mqtt: MqttConfig
    migration: MigrationConfig
    devices: tuple[InstanceConfig, ...] = field(default_factory=tuple)
    auto_add: bool = False
    state_path: str = "/data/state.json"
    http_port: int = 8099
    debug: bool = False


def read_options() -> dict[str, Any]:
    path = os.environ.get("Z2M_BRIDGE_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def _read_instances(raw: Any) -> tuple[InstanceConfig, ...]:
    out: list[InstanceConfig] = []
    seen: set[str] = set()
    for item in raw or []:
        if isinstance(item, str):
            item = {"uid": item}
        if not isinstance(item, dict):
            continue
        uid = str(item.get("uid") or "").strip()
        if not uid or uid in seen:
            continue
        kind = str(item.get("kind") or KIND_DEVICE).strip().lower()
        if kind not in (KIND_DEVICE, KIND_GROUP):
            kind = KIND_DEVICE
        seen.add(uid)
        out.append(InstanceConfig(uid=uid, kind=kind))
    return tuple(out)


def load_settings(options: dict[str, Any]) -> Settings:
    def _read_float(raw: dict[str, Any], key: str, default: float) -> float:
        try:
            v = raw.get(key)
            if v is None:
                return float(default)
            return float(v)
        except (TypeError, ValueError):
            return float(default)

    mqtt_raw = options.get("mqtt") or {}
    try:
        port = int(mqtt_raw.get("port") or 1883)
    except (TypeError, ValueError):
        port = 1883
    mqtt = MqttConfig(
        host=str(mqtt_raw.get("host") or "core-mosquitto"),
        port=port,
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        base_topic=str(mqtt_raw.get("base_topic") or "zigbee2mqtt").rstrip("/"),
        client_id=str(mqtt_raw.get("client_id") or "z2m-homey-bridge"),
    )

    mig_raw = options.get("migration") or {}
    migration = MigrationConfig(
        settling_delay_s=max(0.0, _read_float(mig_raw, "settling_delay_s", 2.0)),
        debounce_s=max(0.0, _read_float(mig_raw, "debounce_s", 0.5)),
        restart_delay_s=max(0.0, _read_float(mig_raw, "restart_delay_s", 1.0)),
        retry_delay_s=max(1.0, _read_float(mig_raw, "retry_delay_s", 60.0)),
        init_delay_s=max(0.0, _read_float(mig_raw, "init_delay_s", 0.0)),
    )

    try:
        http_port = int(options.get("http_port") or 8099)
    except (TypeError, ValueError):
        http_port = 8099

    return Settings(
        mqtt=mqtt,
        migration=migration,
        devices=_read_instances(options.get("devices")),
        auto_add=bool(options.get("auto_add") or False),
        state_path=str(options.get("state_path") or os.environ.get("Z2M_BRIDGE_STATE", "/data/state.json")),
        http_port=http_port,
        debug=bool(options.get("debug") or False),
    )
