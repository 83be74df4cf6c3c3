from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from .converters import get_converters
from .errors import (
    BridgeError,
    InvalidEnumValueError,
    NotSettableError,
    StaleStoreError,
    UnmappedPropertyError,
)
from .host import HostDevice
from .models import CapabilityMapping, CapabilityMappingTable
from .store import StateStore

_LOGGER = logging.getLogger("z2m_bridge.router")

ACTION_CAPABILITY = "action"
ACTION_SENTINEL = "---"
ACTION_TRIGGER = "action_event_received"

TableProvider = Callable[[], CapabilityMappingTable]
Publish = Callable[[dict[str, Any]], Awaitable[None]]


def parse_message(payload: str | bytes | dict[str, Any] | None) -> dict[str, Any]:
    """Decode an inbound device message; an empty payload means no update."""
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    text = payload.strip()
    if not text:
        return {}
    obj = json.loads(text)
    return obj if isinstance(obj, dict) else {}


class MessageRouter:
    """Gateway property values -> host capability values."""

    def __init__(
        self,
        *,
        uid: str,
        name: str,
        host: HostDevice,
        table: TableProvider,
        store: StateStore | None = None,
    ) -> None:
        self.uid = uid
        self.name = name
        self._host = host
        self._table = table
        self._store = store
        self._persisted: dict[str, Any] = store.get_capability_values(uid) if store is not None else {}

    def _persist(self, capability: str, value: Any) -> None:
        # only changed values reach the state file
        if self._store is None or capability == ACTION_CAPABILITY:
            return
        if capability in self._persisted and self._persisted[capability] == value:
            return
        try:
            self._store.set_capability_value(self.uid, capability, value)
        except OSError:
            _LOGGER.exception("%s cannot persist %s", self.name, capability)
            return
        self._persisted[capability] = value

    async def _set_capability(self, capability: str, value: Any) -> None:
        if await self._host.has_capability(capability):
            try:
                await self._host.set_capability_value(capability, value)
            except Exception as e:
                _LOGGER.warning("%s cannot set %s to %r: %s", self.name, capability, value, e)
        self._persist(capability, value)

    async def _fire_action(self, value: Any) -> None:
        if value in (None, "", ACTION_SENTINEL):
            return
        try:
            await self._host.trigger(ACTION_TRIGGER, {"action": value}, {"event": value})
        except Exception:
            _LOGGER.exception("%s action trigger failed", self.name)
        # momentary: the capability does not keep the action as state
        await self._set_capability(ACTION_CAPABILITY, ACTION_SENTINEL)

    async def handle(self, payload: str | bytes | dict[str, Any] | None) -> dict[str, Any]:
        message = parse_message(payload)
        if not message:
            return {}

        table = self._table()
        applied: dict[str, Any] = {}
        for prop, value in message.items():
            mapping = table.get(prop)
            if mapping is None:
                _LOGGER.debug("%s property %s not mapped", self.name, prop)
                continue
            converters = get_converters(prop, mapping.expose)
            if converters is None:
                _LOGGER.debug("%s property %s has no converter", self.name, prop)
                continue
            try:
                result = converters.z2m_to_homey(value, message)
            except (TypeError, ValueError) as e:
                _LOGGER.warning("%s cannot convert %s=%r: %s", self.name, prop, value, e)
                continue

            for cap, cap_value in result.items():
                if cap_value is None or cap not in mapping.homey_capabilities:
                    continue
                await self._set_capability(cap, cap_value)
                applied[cap] = cap_value
                if cap == ACTION_CAPABILITY:
                    await self._fire_action(cap_value)
        return applied


class CommandRouter:
    """Host capability changes -> gateway set commands.

    Capabilities that share one mapping are coalesced: changes inside the
    debounce window produce one command.
    """

    def __init__(
        self,
        *,
        uid: str,
        name: str,
        host: HostDevice,
        table: TableProvider,
        is_store_current: Callable[[], bool],
        publish: Publish,
        debounce_s: float = 0.5,
    ) -> None:
        self.uid = uid
        self.name = name
        self._host = host
        self._table = table
        self._is_store_current = is_store_current
        self._publish = publish
        self._debounce_s = max(0.0, float(debounce_s))
        self._pending: dict[str, dict[str, Any]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    def close(self) -> None:
        # pending debounce tasks are left to run out; they see the flag and drop their command
        self._closed = True

    def locate(self, capability: str) -> tuple[str, CapabilityMapping]:
        for prop, mapping in self._table().items():
            if capability in mapping.homey_capabilities:
                return prop, mapping
        raise UnmappedPropertyError(f"{capability} capability not supported")

    def _check_store(self) -> None:
        if not self._is_store_current():
            raise StaleStoreError("Store capabilities are not current, device needs migration")

    @staticmethod
    def _check_mapping(prop: str, mapping: CapabilityMapping, values: dict[str, Any]) -> None:
        expose = mapping.expose
        if not expose.settable:
            raise NotSettableError(f"{prop} capability is not settable")
        if expose.is_enum:
            allowed = list(expose.values or ())
            for v in values.values():
                if v not in allowed:
                    raise InvalidEnumValueError(f"{v} command not supported")

    def check_outbound(self, payload: dict[str, Any]) -> None:
        """Validate a raw gateway command against the persisted table."""
        if not payload:
            raise UnmappedPropertyError("command without payload")
        self._check_store()
        table = self._table()
        for prop, value in payload.items():
            mapping = table.get(prop)
            if mapping is None:
                raise UnmappedPropertyError(f"{prop} capability not supported")
            self._check_mapping(prop, mapping, {prop: value})

    async def on_capability_change(self, capability: str, value: Any) -> None:
        prop, mapping = self.locate(capability)
        self._check_store()
        self._check_mapping(prop, mapping, {capability: value})

        if len(mapping.homey_capabilities) > 1 and self._debounce_s > 0:
            self._pending.setdefault(prop, {})[capability] = value
            task = self._tasks.get(prop)
            if task is not None and not task.done():
                task.cancel()
            self._tasks[prop] = asyncio.create_task(self._debounced(prop))
            return

        await self.dispatch(prop, mapping, {capability: value})

    async def command(self, capability: str, value: Any) -> dict[str, Any] | None:
        """Route one capability value right away (flow actions)."""
        prop, mapping = self.locate(capability)
        self._check_store()
        self._check_mapping(prop, mapping, {capability: value})
        return await self.dispatch(prop, mapping, {capability: value})

    async def _debounced(self, prop: str) -> None:
        try:
            await asyncio.sleep(self._debounce_s)
        except asyncio.CancelledError:
            return
        changed = self._pending.pop(prop, {})
        self._tasks.pop(prop, None)
        if self._closed or not changed:
            return
        mapping = self._table().get(prop)
        if mapping is None:
            _LOGGER.warning("%s dropped command for %s: mapping disappeared", self.name, prop)
            return
        try:
            self._check_store()
            await self.dispatch(prop, mapping, changed)
        except BridgeError as e:
            _LOGGER.error("%s command for %s rejected: %s", self.name, prop, e)

    async def _read_current(self, capabilities: tuple[str, ...], changed: dict[str, Any]) -> dict[str, Any]:
        current: dict[str, Any] = {}
        for cap in capabilities:
            if cap in changed:
                continue
            try:
                current[cap] = await self._host.get_capability_value(cap)
            except Exception:
                current[cap] = None
        return current

    async def dispatch(self, prop: str, mapping: CapabilityMapping, changed: dict[str, Any]) -> dict[str, Any] | None:
        converters = get_converters(prop, mapping.expose)
        if converters is None or converters.homey_to_z2m is None:
            raise NotSettableError(f"{prop} has no command mapping")
        current = await self._read_current(mapping.homey_capabilities, changed)
        payload = converters.homey_to_z2m(changed, current.get)
        if payload is None:
            _LOGGER.debug("%s change of %s needs no command", self.name, sorted(changed))
            return None
        await self._publish(payload)
        return payload
