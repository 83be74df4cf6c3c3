from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .bridge import Bridge, Transport
from .device import BridgedDevice
from .events import EventBus, SchemaChanged, Subscription, Topic
from .host import LocalHostDevice
from .migration import SettleStrategy
from .models import KIND_DEVICE, KIND_GROUP
from .mqtt_client import MqttClient
from .realtime import RealtimeHub
from .settings import Settings
from .store import StateStore

_LOGGER = logging.getLogger("z2m_bridge.runtime")


class BridgeRuntime:
    """Everything one bridge process runs: transport, directory and device instances."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Transport | None = None,
        store: StateStore | None = None,
        settle_factory: Callable[[], SettleStrategy] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or StateStore(settings.state_path)
        self.bus = EventBus()
        self.hub = RealtimeHub()
        if client is None:
            client = MqttClient(
                host=settings.mqtt.host,
                port=settings.mqtt.port,
                username=settings.mqtt.username,
                password=settings.mqtt.password,
                client_id=settings.mqtt.client_id,
            )
        self.client = client
        self.bridge = Bridge(client=client, base_topic=settings.mqtt.base_topic, bus=self.bus)
        self.devices: dict[str, BridgedDevice] = {}
        self._settle_factory = settle_factory
        self._auto_add: Subscription | None = None
        self._tasks: set[asyncio.Task] = set()
        self.started = False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        self.bridge.start(asyncio.get_running_loop())
        for inst in self.settings.devices:
            self.store.add_instance(uid=inst.uid, kind=inst.kind, settings={"friendly_name": inst.uid})
        for rec in self.store.list_instances():
            self._launch(rec["uid"], rec["kind"])
        if self.settings.auto_add:
            self._auto_add = self.bus.subscribe(Topic.SCHEMA_CHANGED, self._on_schema_changed)
        self.started = True
        _LOGGER.info("Bridge runtime started with %d instances", len(self.devices))

    async def stop(self) -> None:
        if self._auto_add is not None:
            self._auto_add.unsubscribe()
            self._auto_add = None
        for device in list(self.devices.values()):
            await device.stop()
        for task in list(self._tasks):
            task.cancel()
        self.bridge.stop()
        await self.hub.close_all()
        self.started = False

    def _launch(self, uid: str, kind: str) -> BridgedDevice:
        existing = self.devices.get(uid)
        if existing is not None:
            return existing
        name = str(self.store.get_settings(uid).get("friendly_name") or uid)
        host = LocalHostDevice(uid=uid, name=name, store=self.store, notify=self.hub.broadcast)
        device = BridgedDevice(
            uid=uid,
            kind=kind,
            bridge=self.bridge,
            bus=self.bus,
            host=host,
            store=self.store,
            config=self.settings.migration,
            settle=self._settle_factory() if self._settle_factory else None,
        )
        self.devices[uid] = device
        self._spawn(device.start())
        return device

    def _on_schema_changed(self, event: SchemaChanged) -> None:
        if event.kind != KIND_DEVICE:
            return
        for uid, desc in self.bridge.devices.items():
            if uid not in self.devices and desc.has_definition:
                _LOGGER.info("Adopting %s (%s)", desc.friendly_name, uid)
                self.add_device(uid)

    def add_device(self, uid: str, *, kind: str = KIND_DEVICE, friendly_name: str = "") -> BridgedDevice:
        if kind not in (KIND_DEVICE, KIND_GROUP):
            raise ValueError(f"unknown instance kind {kind}")
        if not friendly_name:
            source = self.bridge.lookup(uid, kind)
            friendly_name = source.friendly_name if source is not None else uid
        self.store.add_instance(uid=uid, kind=kind, settings={"friendly_name": friendly_name})
        return self._launch(uid, kind)

    async def delete_device(self, uid: str) -> bool:
        device = self.devices.pop(uid, None)
        if device is not None:
            await device.stop()
        deleted = self.store.delete_instance(uid)
        if device is not None or deleted:
            _LOGGER.info("Deleted instance %s", uid)
        return device is not None or deleted

    def get_device(self, uid: str) -> BridgedDevice:
        return self.devices[uid]

    def device_snapshot(self, device: BridgedDevice) -> dict[str, Any]:
        out = device.snapshot()
        host = device.host
        if isinstance(host, LocalHostDevice):
            out.update(host.snapshot())
        return out

    def snapshot(self) -> dict[str, Any]:
        return {
            "bridge": self.bridge.snapshot(),
            "devices": [self.device_snapshot(d) for d in self.devices.values()],
        }
