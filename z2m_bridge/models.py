from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from .exposes import Expose, parse_exposes

# Bump whenever the persisted shape of CapabilityMapping changes.
STORE_VERSION = 2

Availability = Literal["online", "offline"]

KIND_DEVICE = "device"
KIND_GROUP = "group"


@dataclass(frozen=True)
class CapabilityMapping:
    homey_capabilities: tuple[str, ...]
    expose: Expose

    def to_dict(self) -> dict[str, Any]:
        return {"homeyCapabilities": list(self.homey_capabilities), "expose": self.expose.to_dict()}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CapabilityMapping":
        caps = raw.get("homeyCapabilities") or []
        return cls(homey_capabilities=tuple(str(c) for c in caps), expose=Expose.from_dict(raw.get("expose") or {}))


CapabilityMappingTable = dict[str, CapabilityMapping]


def table_to_dict(table: CapabilityMappingTable) -> dict[str, Any]:
    return {prop: mapping.to_dict() for prop, mapping in table.items()}


def table_from_dict(raw: dict[str, Any] | None) -> CapabilityMappingTable:
    out: CapabilityMappingTable = {}
    for prop, item in (raw or {}).items():
        if isinstance(item, dict):
            out[str(prop)] = CapabilityMapping.from_dict(item)
    return out


def table_capabilities(table: CapabilityMappingTable) -> list[str]:
    caps: list[str] = []
    for mapping in table.values():
        for cap in mapping.homey_capabilities:
            if cap not in caps:
                caps.append(cap)
    return caps


@dataclass(frozen=True)
class DeviceStore:
    capability_mapping_table: dict[str, Any]
    store_version: int

    @property
    def table(self) -> CapabilityMappingTable:
        return table_from_dict(self.capability_mapping_table)

    def matches(self, table: CapabilityMappingTable, version: int = STORE_VERSION) -> bool:
        return self.store_version == version and self.capability_mapping_table == table_to_dict(table)

    def to_dict(self) -> dict[str, Any]:
        return {"capabilityMappingTable": self.capability_mapping_table, "storeVersion": self.store_version}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DeviceStore":
        try:
            version = int(raw.get("storeVersion") or 0)
        except (TypeError, ValueError):
            version = 0
        table = raw.get("capabilityMappingTable")
        return cls(capability_mapping_table=table if isinstance(table, dict) else {}, store_version=version)


@dataclass
class DeviceDescriptor:
    """One entry of the gateway's bridge/devices list."""

    ieee_address: str
    friendly_name: str
    type: str = ""
    model: str = ""
    model_id: str = ""
    vendor: str = ""
    description: str = ""
    power_source: str = ""
    exposes: list[Expose] = field(default_factory=list)
    availability: Availability | None = None

    @property
    def uid(self) -> str:
        return self.ieee_address

    @property
    def model_key(self) -> str:
        return (self.model or self.model_id or "").strip().upper()

    @property
    def has_definition(self) -> bool:
        return bool(self.exposes)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DeviceDescriptor":
        definition = raw.get("definition") or {}
        if not isinstance(definition, dict):
            definition = {}
        return cls(
            ieee_address=str(raw.get("ieee_address") or ""),
            friendly_name=str(raw.get("friendly_name") or ""),
            type=str(raw.get("type") or ""),
            model=str(definition.get("model") or ""),
            model_id=str(raw.get("model_id") or ""),
            vendor=str(definition.get("vendor") or ""),
            description=str(definition.get("description") or ""),
            power_source=str(raw.get("power_source") or ""),
            exposes=parse_exposes(definition.get("exposes")),
        )


@dataclass
class GroupDescriptor:
    id: str
    friendly_name: str
    members: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GroupDescriptor":
        members = [
            str(m.get("ieee_address") or "")
            for m in (raw.get("members") or [])
            if isinstance(m, dict) and m.get("ieee_address")
        ]
        return cls(id=str(raw.get("id") if raw.get("id") is not None else ""), friendly_name=str(raw.get("friendly_name") or ""), members=members)


@dataclass
class SchemaSource:
    """What the migration engine needs to know about one device or group."""

    uid: str
    kind: str
    friendly_name: str
    model: str = ""
    description: str = ""
    power_source: str = ""
    exposes: list[Expose] = field(default_factory=list)
    availability: Availability | None = None

    @property
    def is_group(self) -> bool:
        return self.kind == KIND_GROUP
