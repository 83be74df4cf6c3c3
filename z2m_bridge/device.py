from __future__ import annotations

import asyncio
import logging
from typing import Any

from .bridge import Bridge
from .capability_map import map_class_and_icon, resolve
from .errors import ConnectivityError, SchemaUnavailableError, StaleStoreError
from .events import BRIDGE_SUBJECT, EventBus, LivenessChanged, SchemaChanged, Subscription, Topic
from .host import HostDevice
from .migration import FixedDelaySettle, MigrationEngine, MigrationResult, MigrationState, SettleStrategy
from .models import KIND_DEVICE, KIND_GROUP, CapabilityMappingTable, SchemaSource
from .router import CommandRouter, MessageRouter
from .settings import MigrationConfig
from .store import StateStore

_LOGGER = logging.getLogger("z2m_bridge.device")

BRIDGE_OFFLINE = "Bridge is offline"
DEVICE_OFFLINE = "Device is offline"
BATTERY = "Battery"


class BridgedDevice:
    """One device (or group) instance bridged to the host.

    Owns its migration engine and routers, listens to the bridge's schema and
    liveness events and restarts itself when the gateway side changes in a way
    the running instance cannot absorb.
    """

    def __init__(
        self,
        *,
        uid: str,
        kind: str = KIND_DEVICE,
        bridge: Bridge,
        bus: EventBus,
        host: HostDevice,
        store: StateStore,
        config: MigrationConfig | None = None,
        settle: SettleStrategy | None = None,
    ) -> None:
        self.uid = uid
        self.kind = kind
        self._bridge = bridge
        self._bus = bus
        self.host = host
        self._store = store
        self._config = config or MigrationConfig()

        self.label = "Group" if kind == KIND_GROUP else "Device"
        self.friendly_name = str(store.get_settings(uid).get("friendly_name") or uid)
        self.device_class = "other"
        self.icon = "icon.svg"
        self.power_source = ""

        self.engine = MigrationEngine(
            uid=uid,
            name=self.friendly_name,
            host=host,
            store=store,
            lookup=self._lookup,
            settle=settle or FixedDelaySettle(self._config.settling_delay_s),
            label=self.label,
        )
        self._table: CapabilityMappingTable = {}
        self._message_router: MessageRouter | None = None
        self._command_router: CommandRouter | None = None
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()

        self.restarting = False
        self.listeners_registered = False
        self.closed = False
        self._migrating = False
        self._rerun = False
        self._missing = False
        self._bridge_offline = False

    @property
    def is_group(self) -> bool:
        return self.kind == KIND_GROUP

    @property
    def state_topic(self) -> str:
        return self._bridge.device_topic(self.friendly_name)

    def _lookup(self) -> SchemaSource | None:
        return self._bridge.lookup(self.uid, self.kind)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _rename(self, friendly_name: str) -> None:
        self.friendly_name = friendly_name
        self.engine.name = friendly_name
        self._store.update_settings(self.uid, {"friendly_name": friendly_name})

    # lifecycle

    async def start(self) -> None:
        """Bring the instance up; failures end in an unavailable host device."""
        self.closed = False
        if self._config.init_delay_s > 0:
            await asyncio.sleep(self._config.init_delay_s)
        _LOGGER.info("%s init %s", self.friendly_name, self.label.lower())
        self._subscribe_events()
        restart_delay: float | None = None
        self._migrating = True
        self._rerun = False
        try:
            source = self._lookup()
            if source is not None and source.friendly_name and source.friendly_name != self.friendly_name:
                _LOGGER.info("%s renamed to %s", self.friendly_name, source.friendly_name)
                self._rename(source.friendly_name)
            result = await self._migrate()
            if result.restart_required:
                restart_delay = self._config.restart_delay_s
        except SchemaUnavailableError as e:
            self._missing = True
            _LOGGER.warning("%s %s", self.friendly_name, e)
            await self._set_unavailable(str(e))
        except Exception as e:
            _LOGGER.exception("%s init failed", self.friendly_name)
            await self._set_unavailable(str(e))
            restart_delay = self._config.retry_delay_s
        finally:
            self._migrating = False
        self.restarting = False
        if restart_delay is not None:
            self.restart(restart_delay)
        elif self._rerun and not self.closed:
            # the directory changed while the first migration was running
            await self._migrate_safely()

    async def _migrate(self) -> MigrationResult:
        source = self._lookup()
        availability = None if self.is_group or source is None else source.availability
        result = await self.engine.run(availability=availability)
        self._missing = False
        self._table = result.table
        if source is not None:
            self.power_source = source.power_source
            self.device_class, self.icon = map_class_and_icon(source.description)
        if result.failures:
            _LOGGER.warning("%s migration finished with %d failed host calls", self.friendly_name, len(result.failures))
        if result.restart_required:
            return result

        self._register_listeners()
        if self._bridge_offline:
            await self._set_unavailable(BRIDGE_OFFLINE)
        try:
            await self.get_status({"state": ""}, "appInit")
        except ConnectivityError as e:
            _LOGGER.warning("%s initial status request skipped: %s", self.friendly_name, e)
        return result

    async def _migrate_safely(self) -> None:
        if self._migrating:
            self._rerun = True
            return
        self._migrating = True
        try:
            while True:
                self._rerun = False
                try:
                    result = await self._migrate()
                except SchemaUnavailableError as e:
                    self._missing = True
                    await self._set_unavailable(str(e))
                    return
                except Exception as e:
                    _LOGGER.exception("%s migration failed", self.friendly_name)
                    await self._set_unavailable(str(e))
                    self.restart(self._config.retry_delay_s)
                    return
                if result.restart_required:
                    self.restart(self._config.restart_delay_s)
                    return
                if not self._rerun or self.closed:
                    return
        finally:
            self._migrating = False

    def restart(self, delay: float | None = None) -> bool:
        """Tear down and start again after `delay` seconds; no-op while restarting."""
        if self.restarting:
            _LOGGER.debug("%s restart already pending", self.friendly_name)
            return False
        self.restarting = True
        wait = self._config.restart_delay_s if delay is None else max(0.0, float(delay))
        _LOGGER.info("%s restarting in %.1fs", self.friendly_name, wait)
        self._teardown()
        self._spawn(self._restart_after(wait))
        return True

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.closed:
            self.restarting = False
            return
        await self.start()

    def _teardown(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()
        if self.listeners_registered:
            self._bridge.unregister(self.state_topic, self._on_state_message)
            self.host.set_capability_listener(None)
            self.listeners_registered = False
        if self._command_router is not None:
            self._command_router.close()
        self._command_router = None
        self._message_router = None

    async def stop(self) -> None:
        """Final teardown, used on deletion and shutdown."""
        self.closed = True
        self._teardown()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    # listeners

    def _subscribe_events(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions.append(self._bus.subscribe(Topic.SCHEMA_CHANGED, self._on_schema_changed))
        self._subscriptions.append(self._bus.subscribe(Topic.LIVENESS_CHANGED, self._on_liveness_changed))

    def _register_listeners(self) -> None:
        self._message_router = MessageRouter(
            uid=self.uid,
            name=self.friendly_name,
            host=self.host,
            table=self._current_table,
            store=self._store,
        )
        if self._command_router is not None:
            self._command_router.close()
        self._command_router = CommandRouter(
            uid=self.uid,
            name=self.friendly_name,
            host=self.host,
            table=self._current_table,
            is_store_current=self.is_store_current,
            publish=self._publish_set,
            debounce_s=self._config.debounce_s,
        )
        self.host.set_capability_listener(self._command_router.on_capability_change)
        if not self.listeners_registered:
            self._bridge.register(self.state_topic, self._on_state_message)
            self.listeners_registered = True

    def _current_table(self) -> CapabilityMappingTable:
        return self._table

    def is_store_current(self) -> bool:
        """True when the persisted table is the one the routers translate with."""
        if self._migrating:
            return False
        stored = self._store.get_device_store(self.uid)
        return stored is not None and stored.matches(self._table)

    async def _on_state_message(self, payload: str) -> None:
        router = self._message_router
        if router is None or self.closed:
            return
        try:
            await router.handle(payload)
        except ValueError as e:
            _LOGGER.warning("%s invalid message: %s", self.friendly_name, e)

    def _on_schema_changed(self, event: SchemaChanged) -> None:
        if self.closed or self.restarting:
            return
        # member exposes come from the device list, so groups follow both lists
        if event.kind == KIND_GROUP and not self.is_group:
            return
        self._spawn(self._check_changed_or_deleted())

    async def _check_changed_or_deleted(self) -> None:
        source = self._lookup()
        if source is None:
            if not self._missing:
                self._missing = True
                reason = f"{self.label} went missing in Zigbee2MQTT"
                _LOGGER.warning("%s %s", self.friendly_name, reason)
                await self._set_unavailable(reason)
            return
        if source.friendly_name and source.friendly_name != self.friendly_name:
            _LOGGER.info("%s renamed to %s", self.friendly_name, source.friendly_name)
            self._store.update_settings(self.uid, {"friendly_name": source.friendly_name})
            self.restart(self._config.restart_delay_s)
            return

        stored = self._store.get_device_store(self.uid)
        table = resolve(source.exposes, is_group=source.is_group, model=source.model)
        drifted = stored is None or not stored.matches(table)
        if self._missing or drifted or self.engine.state != MigrationState.READY:
            _LOGGER.info("%s schema changed, migrating", self.friendly_name)
            await self._migrate_safely()

    def _on_liveness_changed(self, event: LivenessChanged) -> None:
        if self.closed:
            return
        if event.subject == BRIDGE_SUBJECT:
            if not event.online:
                self._bridge_offline = True
                self._spawn(self._set_unavailable(BRIDGE_OFFLINE))
            elif self._bridge_offline:
                self._bridge_offline = False
                self.restart(self._config.restart_delay_s)
            return
        if event.subject != self.uid or self.is_group:
            return
        self._spawn(self._apply_availability(event.online))

    async def _apply_availability(self, online: bool) -> None:
        if self.engine.state != MigrationState.READY or self._bridge_offline or self._missing:
            return
        if online:
            await self.host.set_available()
        else:
            await self._set_unavailable(DEVICE_OFFLINE)

    async def _set_unavailable(self, reason: str) -> None:
        try:
            await self.host.set_unavailable(reason)
        except Exception:
            _LOGGER.exception("%s cannot mark unavailable", self.friendly_name)

    # commands

    async def _publish_set(self, payload: dict[str, Any]) -> None:
        self._bridge.publish(self._bridge.device_topic(self.friendly_name, "set"), payload)

    def _router(self) -> CommandRouter:
        if self._command_router is None:
            raise StaleStoreError(f"{self.label} is not initialised")
        return self._command_router

    async def get_status(self, payload: dict[str, Any] | None = None, source: str = "") -> bool:
        """Ask the gateway for current values; battery devices would not answer."""
        if self.power_source == BATTERY:
            _LOGGER.debug("%s status request skipped for battery device", self.friendly_name)
            return False
        _LOGGER.debug("%s get_status from %s", self.friendly_name, source or "api")
        self._bridge.publish(self._bridge.device_topic(self.friendly_name, "get"), payload or {"state": ""})
        return True

    async def set_command(self, payload: dict[str, Any], source: str = "") -> None:
        self._router().check_outbound(payload)
        _LOGGER.info("%s set_command from %s: %s", self.friendly_name, source or "api", payload)
        await self._publish_set(payload)

    async def set_custom_payload(self, payload: str, source: str = "") -> None:
        _LOGGER.info("%s set_custom_payload from %s", self.friendly_name, source or "api")
        self._bridge.publish(self._bridge.device_topic(self.friendly_name, "set"), payload)

    async def set_capability_command(self, capability: str, value: Any, source: str = "") -> dict[str, Any] | None:
        sent = await self._router().command(capability, value)
        _LOGGER.info("%s %s=%r from %s", self.friendly_name, capability, value, source or "api")
        if await self.host.has_capability(capability):
            await self.host.set_capability_value(capability, value)
        return sent

    def snapshot(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "kind": self.kind,
            "friendly_name": self.friendly_name,
            "class": self.device_class,
            "icon": self.icon,
            "migration_state": self.engine.state.value,
            "restarting": self.restarting,
            "properties": sorted(self._table),
        }
