"""Bridge exception types.

Raised by the migration engine, the routers and the device lifecycle. The HTTP
layer translates them into status codes.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for bridge failures."""


class SchemaUnavailableError(BridgeError):
    """Device (or group) is absent from the gateway's device directory."""


class ConnectivityError(BridgeError):
    """MQTT transport is not connected."""


class MappingError(BridgeError):
    """A host-side command cannot be translated into a gateway command."""


class UnmappedPropertyError(MappingError):
    """Capability or property has no mapping in the persisted table."""


class NotSettableError(MappingError):
    """The property's expose lacks the settable access bit."""


class InvalidEnumValueError(MappingError):
    """The value is not one of the expose's enum values."""


class StaleStoreError(MappingError):
    """The persisted mapping table does not match the live schema."""


class UnknownCapabilityError(BridgeError):
    """Host call referenced a capability the device does not have."""


class PersistenceSideEffectError(BridgeError):
    """A single host capability mutation failed during migration.

    Attributes:
        capability: Capability the failed call was about.
        operation: One of "add", "remove", "options".
    """

    def __init__(self, message: str, *, capability: str, operation: str) -> None:
        super().__init__(message)
        self.capability = capability
        self.operation = operation
