from __future__ import annotations

from typing import Iterable

from .converters import lookup
from .exposes import TYPE_NUMERIC, Expose, iter_features_first
from .models import CapabilityMapping, CapabilityMappingTable

# model -> properties that must not be mapped for that model
PROPERTY_SKIP_MAP: dict[str, tuple[str, ...]] = {
    "DJT11LM": ("sensitivity",),
}

# model -> exposes missing from the gateway definition
PROPERTY_ADD_MAP: dict[str, tuple[Expose, ...]] = {
    "ICZB-RM11S": (
        Expose(type=TYPE_NUMERIC, property="action_group", name="action group", access=1, unit=""),
    ),
}

GROUP_EXCLUDED_CAPABILITIES = ("measure_linkquality",)


def resolve(exposes: Iterable[Expose], *, is_group: bool = False, model: str = "") -> CapabilityMappingTable:
    """Resolve a device expose schema into a capability mapping table.

    Features of composite exposes are visited before the expose itself. A host
    capability is claimed by the first property that maps to it; properties
    without a converter are left out.
    """
    model_key = (model or "").strip().upper()
    skip = PROPERTY_SKIP_MAP.get(model_key, ())
    all_exposes = list(exposes) + list(PROPERTY_ADD_MAP.get(model_key, ()))

    table: CapabilityMappingTable = {}
    claimed: set[str] = set()

    for expose in iter_features_first(all_exposes):
        prop = expose.property
        if not prop or prop in table or prop in skip:
            continue
        if prop == "state" and "position" in table:
            continue

        if prop == "position":
            # window coverings report state but never get an onoff capability
            removed = table.pop("state", None)
            if removed is not None:
                claimed.difference_update(removed.homey_capabilities)

        spec = lookup(prop, expose)
        if not spec.supported:
            continue

        caps = tuple(
            cap
            for cap in spec.capabilities
            if cap not in claimed and not (is_group and cap in GROUP_EXCLUDED_CAPABILITIES)
        )
        if not caps:
            continue
        claimed.update(caps)
        table[prop] = CapabilityMapping(homey_capabilities=caps, expose=expose)

    return table


# description fragment -> (host class, icon). First match in this order wins.
CLASS_ICON_MAP: tuple[tuple[str, str, str], ...] = (
    ("door sensor", "sensor", "contact.svg"),
    ("radiator valve", "thermostat", "radiator_valve.svg"),
    ("thermostat", "thermostat", "thermostat.svg"),
    ("soil sensor", "sensor", "soil_sensor.svg"),
    ("vibration sensor", "sensor", "vibration_sensor.svg"),
    ("pressure sensor", "sensor", "vibration_sensor.svg"),
    ("wireless switch", "sensor", "wireless_switch.svg"),
    ("dimmer switch", "sensor", "wireless_switch.svg"),
    ("on/off switch", "sensor", "wireless_switch.svg"),
    ("motion", "sensor", "motion.svg"),
    ("presence", "sensor", "motion.svg"),
    ("occupancy", "sensor", "motion.svg"),
    ("wall switch module", "button", "wireless_switch.svg"),
    ("smart button", "button", "wireless_switch.svg"),
    ("2 gang switch module", "socket", "2gangswitch.svg"),
    ("2 channel dimmer", "light", "2gangdimmer.svg"),
    ("plug", "socket", "socket.svg"),
    ("bulb", "light", "light.svg"),
    ("gu10", "light", "light.svg"),
    ("e27", "light", "light.svg"),
    ("dimmer", "light", "light.svg"),
    ("bloom", "light", "light.svg"),
    ("lightstrip", "light", "light.svg"),
    ("led controller", "light", "light.svg"),
    ("led", "light", "light.svg"),
    ("hue go", "light", "light.svg"),
    ("fyrtur", "windowcoverings", "window_coverings.svg"),
    ("kadrilj", "windowcoverings", "window_coverings.svg"),
    ("praktlysing", "windowcoverings", "window_coverings.svg"),
    ("tredansen", "windowcoverings", "window_coverings.svg"),
    ("parasol", "sensor", "contact.svg"),
    ("tradfri shortcut", "button", "wireless_switch.svg"),
    ("rodret", "button", "wireless_switch.svg"),
    ("somrig", "button", "wireless_switch.svg"),
    ("twinguard", "smokealarm", "smoke_detector.svg"),
    ("smoke", "smokealarm", "smoke_detector.svg"),
    ("air quality", "sensor", "smoke_detector.svg"),
    ("remote control", "remote", "remote_control.svg"),
)


def map_class_and_icon(description: str | None) -> tuple[str, str]:
    d = (description or "").lower()
    if d:
        for key, homey_class, icon in CLASS_ICON_MAP:
            if key in d:
                return homey_class, icon
    return "other", "icon.svg"
