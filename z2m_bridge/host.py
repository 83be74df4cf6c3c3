from __future__ import annotations

import abc
import logging
from collections import deque
from typing import Any, Awaitable, Callable

from .errors import UnknownCapabilityError
from .store import StateStore

_LOGGER = logging.getLogger("z2m_bridge.host")

CapabilityListener = Callable[[str, Any], Awaitable[None]]
Notify = Callable[[str, dict[str, Any]], Awaitable[Any]]


class HostDevice(abc.ABC):
    """Capability API of the home-automation host for one device instance.

    Every call may suspend and may fail on its own; the host offers no
    transactional grouping. Capability options use the keys ``units`` and
    ``title``.
    """

    @abc.abstractmethod
    async def list_capabilities(self) -> list[str]: ...

    @abc.abstractmethod
    async def has_capability(self, name: str) -> bool: ...

    @abc.abstractmethod
    async def add_capability(self, name: str) -> None: ...

    @abc.abstractmethod
    async def remove_capability(self, name: str) -> None: ...

    @abc.abstractmethod
    async def get_capability_value(self, name: str) -> Any: ...

    @abc.abstractmethod
    async def set_capability_value(self, name: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def get_capability_options(self, name: str) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def set_capability_options(self, name: str, options: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def set_available(self) -> None: ...

    @abc.abstractmethod
    async def set_unavailable(self, reason: str) -> None: ...

    @abc.abstractmethod
    async def trigger(self, event: str, tokens: dict[str, Any], state: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def set_capability_listener(self, listener: CapabilityListener | None) -> None:
        """Register the callback for host-side capability changes."""


class LocalHostDevice(HostDevice):
    """Host device kept in process and persisted in the state file.

    Host-side changes arrive through `user_set` (HTTP API); every mutation is
    pushed to the realtime feed when a `notify` callback is given.
    """

    def __init__(
        self,
        *,
        uid: str,
        name: str,
        store: StateStore | None = None,
        notify: Notify | None = None,
    ) -> None:
        self.uid = uid
        self.name = name
        self._store = store
        self._notify = notify
        self._listener: CapabilityListener | None = None

        host_state = store.get_host_state(uid) if store else {"capabilities": [], "options": {}}
        self._capabilities: list[str] = [str(c) for c in host_state.get("capabilities") or []]
        self._options: dict[str, dict[str, Any]] = {
            str(k): dict(v) for k, v in (host_state.get("options") or {}).items() if isinstance(v, dict)
        }
        persisted = store.get_capability_values(uid) if store else {}
        self._values: dict[str, Any] = {c: persisted.get(c) for c in self._capabilities}

        self.available = True
        self.unavailable_reason: str | None = None
        self.triggers: deque[dict[str, Any]] = deque(maxlen=50)

    def _persist_host_state(self) -> None:
        if self._store is not None:
            self._store.set_host_state(self.uid, capabilities=self._capabilities, options=self._options)

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._notify is None:
            return
        try:
            await self._notify(event_type, {"uid": self.uid, **data})
        except Exception:
            _LOGGER.exception("Realtime notify failed for %s", self.name)

    async def list_capabilities(self) -> list[str]:
        return list(self._capabilities)

    async def has_capability(self, name: str) -> bool:
        return name in self._capabilities

    async def add_capability(self, name: str) -> None:
        if name in self._capabilities:
            return
        self._capabilities.append(name)
        self._values.setdefault(name, None)
        self._persist_host_state()
        await self._emit("capability_added", {"capability": name})

    async def remove_capability(self, name: str) -> None:
        if name not in self._capabilities:
            raise UnknownCapabilityError(f"{self.name} has no capability {name}")
        self._capabilities.remove(name)
        self._values.pop(name, None)
        self._options.pop(name, None)
        self._persist_host_state()
        await self._emit("capability_removed", {"capability": name})

    async def get_capability_value(self, name: str) -> Any:
        if name not in self._capabilities:
            raise UnknownCapabilityError(f"{self.name} has no capability {name}")
        return self._values.get(name)

    async def set_capability_value(self, name: str, value: Any) -> None:
        if name not in self._capabilities:
            raise UnknownCapabilityError(f"{self.name} has no capability {name}")
        self._values[name] = value
        await self._emit("capability", {"capability": name, "value": value})

    async def get_capability_options(self, name: str) -> dict[str, Any]:
        if name not in self._capabilities:
            raise UnknownCapabilityError(f"{self.name} has no capability {name}")
        return dict(self._options.get(name) or {})

    async def set_capability_options(self, name: str, options: dict[str, Any]) -> None:
        if name not in self._capabilities:
            raise UnknownCapabilityError(f"{self.name} has no capability {name}")
        self._options[name] = {**(self._options.get(name) or {}), **options}
        self._persist_host_state()

    async def set_available(self) -> None:
        if self.available:
            return
        self.available = True
        self.unavailable_reason = None
        await self._emit("availability", {"available": True})

    async def set_unavailable(self, reason: str) -> None:
        if not self.available and self.unavailable_reason == reason:
            return
        self.available = False
        self.unavailable_reason = reason
        await self._emit("availability", {"available": False, "reason": reason})

    async def trigger(self, event: str, tokens: dict[str, Any], state: dict[str, Any]) -> None:
        item = {"event": event, "tokens": dict(tokens), "state": dict(state)}
        self.triggers.append(item)
        _LOGGER.info("%s trigger %s %s", self.name, event, tokens)
        await self._emit("trigger", item)

    def set_capability_listener(self, listener: CapabilityListener | None) -> None:
        self._listener = listener

    async def user_set(self, name: str, value: Any) -> None:
        """Apply a host-side change: the listener runs first, a failure keeps the old value."""
        if name not in self._capabilities:
            raise UnknownCapabilityError(f"{self.name} has no capability {name}")
        if self._listener is not None:
            await self._listener(name, value)
        await self.set_capability_value(name, value)

    def snapshot(self) -> dict[str, Any]:
        return {
            "capabilities": list(self._capabilities),
            "values": {c: self._values.get(c) for c in self._capabilities},
            "options": {c: dict(self._options.get(c) or {}) for c in self._capabilities},
            "available": self.available,
            "unavailable_reason": self.unavailable_reason,
        }
