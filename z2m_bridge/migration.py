from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .capability_map import resolve
from .errors import PersistenceSideEffectError, SchemaUnavailableError
from .exposes import TYPE_NUMERIC
from .host import HostDevice
from .models import (
    STORE_VERSION,
    Availability,
    CapabilityMappingTable,
    DeviceStore,
    SchemaSource,
    table_capabilities,
    table_to_dict,
)
from .store import StateStore

_LOGGER = logging.getLogger("z2m_bridge.migration")

PRIMARY_ONOFF = "onoff"

SchemaLookup = Callable[[], "SchemaSource | None"]


class MigrationState(str, enum.Enum):
    COLD = "cold"
    SCHEMA_RESOLVED = "schema_resolved"
    STORE_SYNCED = "store_synced"
    CAPABILITIES_SYNCED = "capabilities_synced"
    METADATA_SYNCED = "metadata_synced"
    READY = "ready"


class SettleStrategy(Protocol):
    async def wait(self, reason: str) -> None: ...


class FixedDelaySettle:
    """Blind wait after each host mutation; the host never acknowledges them."""

    def __init__(self, seconds: float = 2.0) -> None:
        self.seconds = max(0.0, float(seconds))

    async def wait(self, reason: str) -> None:
        if self.seconds > 0:
            await asyncio.sleep(self.seconds)


@dataclass
class MigrationResult:
    state: MigrationState
    table: CapabilityMappingTable
    store_written: bool = False
    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    restored: dict[str, Any] = field(default_factory=dict)
    metadata_changed: list[str] = field(default_factory=list)
    failures: list[PersistenceSideEffectError] = field(default_factory=list)

    @property
    def restart_required(self) -> bool:
        return bool(self.metadata_changed)


def diff_capabilities(host_caps: list[str], target_caps: list[str]) -> tuple[list[str], list[str]]:
    """Return (to_remove, to_add), each in a stable order."""
    to_remove = [c for c in host_caps if c not in target_caps]
    to_add = [c for c in target_caps if c not in host_caps]
    return to_remove, to_add


def desired_options(table: CapabilityMappingTable) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for mapping in table.values():
        expose = mapping.expose
        single = len(mapping.homey_capabilities) == 1
        for cap in mapping.homey_capabilities:
            opts: dict[str, Any] = {}
            if expose.type == TYPE_NUMERIC and expose.unit:
                opts["units"] = expose.unit
            if single and expose.name and cap != PRIMARY_ONOFF:
                opts["title"] = expose.name[:1].upper() + expose.name[1:]
            if opts:
                out[cap] = opts
    return out


class MigrationEngine:
    """Brings one device's host capabilities in line with its live schema."""

    def __init__(
        self,
        *,
        uid: str,
        name: str,
        host: HostDevice,
        store: StateStore,
        lookup: SchemaLookup,
        settle: SettleStrategy | None = None,
        label: str = "Device",
    ) -> None:
        self.uid = uid
        self.name = name
        self._host = host
        self._store = store
        self._lookup = lookup
        self._settle = settle or FixedDelaySettle()
        self._label = label
        self._state = MigrationState.COLD
        self._table: CapabilityMappingTable | None = None
        self._marked_unavailable = False

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def table(self) -> CapabilityMappingTable | None:
        return self._table

    @property
    def migrating_reason(self) -> str:
        return f"{self._label} is migrating. Please wait!"

    def reset(self) -> None:
        self._state = MigrationState.COLD

    def resolve_schema(self) -> tuple[SchemaSource, CapabilityMappingTable]:
        source = self._lookup()
        if source is None:
            raise SchemaUnavailableError(f"{self._label} went missing in Zigbee2MQTT")
        table = resolve(source.exposes, is_group=source.is_group, model=source.model)
        self._table = table
        self._state = MigrationState.SCHEMA_RESOLVED
        return source, table

    def is_store_current(self) -> bool:
        if self._table is None:
            return False
        stored = self._store.get_device_store(self.uid)
        return stored is not None and stored.matches(self._table, STORE_VERSION)

    def sync_store(self, table: CapabilityMappingTable) -> bool:
        stored = self._store.get_device_store(self.uid)
        written = False
        if stored is None or not stored.matches(table, STORE_VERSION):
            self._store.set_device_store(
                self.uid,
                DeviceStore(capability_mapping_table=table_to_dict(table), store_version=STORE_VERSION),
            )
            _LOGGER.info("%s capability mapping stored (version %s)", self.name, STORE_VERSION)
            written = True
        self._state = MigrationState.STORE_SYNCED
        return written

    async def _mark_unavailable(self) -> None:
        if self._marked_unavailable:
            return
        self._marked_unavailable = True
        try:
            await self._host.set_unavailable(self.migrating_reason)
        except Exception:
            _LOGGER.exception("%s could not be marked unavailable", self.name)

    async def _snapshot_values(self, host_caps: list[str]) -> dict[str, Any]:
        snapshot: dict[str, Any] = dict(self._store.get_capability_values(self.uid))
        for cap in host_caps:
            try:
                value = await self._host.get_capability_value(cap)
            except Exception:
                _LOGGER.debug("%s no value for %s", self.name, cap)
                continue
            if value is not None:
                snapshot[cap] = value
        return snapshot

    async def sync_capabilities(self, table: CapabilityMappingTable, result: MigrationResult) -> None:
        host_caps = await self._host.list_capabilities()
        to_remove, to_add = diff_capabilities(host_caps, table_capabilities(table))
        if not to_remove and not to_add:
            self._state = MigrationState.CAPABILITIES_SYNCED
            return

        await self._mark_unavailable()
        snapshot = await self._snapshot_values(host_caps)

        for cap in to_remove:
            _LOGGER.info("%s removing capability %s", self.name, cap)
            try:
                await self._host.remove_capability(cap)
                result.removed.append(cap)
            except Exception as e:
                err = PersistenceSideEffectError(str(e), capability=cap, operation="remove")
                result.failures.append(err)
                _LOGGER.warning("%s failed to remove capability %s: %s", self.name, cap, e)
            await self._settle.wait(f"remove {cap}")

        for cap in to_add:
            _LOGGER.info("%s adding capability %s", self.name, cap)
            try:
                await self._host.add_capability(cap)
                result.added.append(cap)
            except Exception as e:
                err = PersistenceSideEffectError(str(e), capability=cap, operation="add")
                result.failures.append(err)
                _LOGGER.warning("%s failed to add capability %s: %s", self.name, cap, e)
            else:
                value = snapshot.get(cap)
                if value is not None:
                    _LOGGER.info("%s restoring value %s to %s", self.name, cap, value)
                    try:
                        await self._host.set_capability_value(cap, value)
                        result.restored[cap] = value
                    except Exception:
                        _LOGGER.exception("%s failed to restore %s", self.name, cap)
            await self._settle.wait(f"add {cap}")

        self._state = MigrationState.CAPABILITIES_SYNCED

    async def sync_metadata(self, table: CapabilityMappingTable, result: MigrationResult) -> None:
        for cap, wanted in desired_options(table).items():
            if not await self._host.has_capability(cap):
                continue
            try:
                current = await self._host.get_capability_options(cap)
            except Exception:
                _LOGGER.debug("%s has no capability options set for %s", self.name, cap)
                current = {}
            if all(current.get(k) == v for k, v in wanted.items()):
                continue

            await self._mark_unavailable()
            _LOGGER.info("%s migrating options for %s: %s", self.name, cap, wanted)
            try:
                await self._host.set_capability_options(cap, wanted)
                result.metadata_changed.append(cap)
            except Exception as e:
                err = PersistenceSideEffectError(str(e), capability=cap, operation="options")
                result.failures.append(err)
                _LOGGER.warning("%s failed to set options for %s: %s", self.name, cap, e)
            await self._settle.wait(f"options {cap}")

        self._state = MigrationState.METADATA_SYNCED

    async def finish(self, availability: Availability | None) -> None:
        if availability == "offline":
            await self._host.set_unavailable("Device is offline")
        else:
            await self._host.set_available()
        self._state = MigrationState.READY

    async def run(self, *, availability: Availability | None = None) -> MigrationResult:
        """Run every step from schema resolution up to ready.

        When capability options changed the engine stops at METADATA_SYNCED;
        the caller is expected to restart the device.
        """
        self._state = MigrationState.COLD
        self._marked_unavailable = False
        _LOGGER.info("%s checking device migration", self.name)

        _source, table = self.resolve_schema()
        result = MigrationResult(state=self._state, table=table)
        result.store_written = self.sync_store(table)
        await self.sync_capabilities(table, result)
        await self.sync_metadata(table, result)

        if result.restart_required:
            _LOGGER.info("%s capability options changed, restart required", self.name)
        else:
            await self.finish(availability)
        result.state = self._state
        return result
