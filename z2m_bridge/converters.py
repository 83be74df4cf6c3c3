from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable

from .color import hs_to_xy, xy_to_hue_sat
from .exposes import Expose

# Capability map: Zigbee2MQTT expose property -> host capability converters.
# See https://www.zigbee2mqtt.io/guide/usage/exposes.html
#
# Adding support for a property means adding one entry to _REGISTRY below.

ReadCapability = Callable[[str], Any]
Z2mToHomey = Callable[[Any, dict[str, Any]], dict[str, Any]]
HomeyToZ2m = Callable[[dict[str, Any], ReadCapability], "dict[str, Any] | None"]


class ConverterKind(str, enum.Enum):
    NUMBER = "number"
    SCALED = "scaled"
    BINARY = "binary"
    ENUM = "enum"
    TEXT = "text"
    MULTI = "multi"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class ConverterSpec:
    kind: ConverterKind
    capabilities: tuple[str, ...]
    z2m_to_homey: Z2mToHomey
    homey_to_z2m: HomeyToZ2m | None = None

    @property
    def supported(self) -> bool:
        return self.kind is not ConverterKind.UNSUPPORTED


@dataclass(frozen=True)
class Converters:
    capabilities: tuple[str, ...]
    z2m_to_homey: Z2mToHomey
    homey_to_z2m: HomeyToZ2m | None


UNSUPPORTED = ConverterSpec(
    kind=ConverterKind.UNSUPPORTED,
    capabilities=(),
    z2m_to_homey=lambda value, state: {},
)


@dataclass(frozen=True)
class LinearScale:
    """Linear mapping between a gateway range and a host range."""

    z2m_min: float
    z2m_max: float
    homey_min: float = 0.0
    homey_max: float = 1.0

    def to_homey(self, value: float) -> float:
        span = self.z2m_max - self.z2m_min
        return self.homey_min + (float(value) - self.z2m_min) * (self.homey_max - self.homey_min) / span

    def to_z2m(self, value: float) -> float:
        span = self.homey_max - self.homey_min
        return self.z2m_min + (float(value) - self.homey_min) * (self.z2m_max - self.z2m_min) / span


BRIGHTNESS = LinearScale(0, 254)
PERCENT = LinearScale(0, 100)
COLOR_TEMP = LinearScale(153, 500)


def to_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


ConverterFactory = Callable[[str, Expose], ConverterSpec]


def _number(capability: str, *, settable: bool = False) -> ConverterFactory:
    def factory(prop: str, expose: Expose) -> ConverterSpec:
        def z2m_to_homey(value: Any, state: dict[str, Any]) -> dict[str, Any]:
            return {capability: to_number(value)}

        def homey_to_z2m(values: dict[str, Any], read: ReadCapability) -> dict[str, Any] | None:
            v = to_number(values.get(capability))
            if v is None:
                return None
            return {prop: v}

        return ConverterSpec(
            kind=ConverterKind.NUMBER,
            capabilities=(capability,),
            z2m_to_homey=z2m_to_homey,
            homey_to_z2m=homey_to_z2m if settable else None,
        )

    return factory


def _scaled(capability: str, scale: LinearScale) -> ConverterFactory:
    def factory(prop: str, expose: Expose) -> ConverterSpec:
        def z2m_to_homey(value: Any, state: dict[str, Any]) -> dict[str, Any]:
            v = to_number(value)
            return {capability: None if v is None else scale.to_homey(v)}

        def homey_to_z2m(values: dict[str, Any], read: ReadCapability) -> dict[str, Any] | None:
            v = to_number(values.get(capability))
            if v is None:
                return None
            return {prop: scale.to_z2m(v)}

        return ConverterSpec(
            kind=ConverterKind.SCALED,
            capabilities=(capability,),
            z2m_to_homey=z2m_to_homey,
            homey_to_z2m=homey_to_z2m,
        )

    return factory


def _binary(
    capability: str,
    *,
    on: Any = None,
    off: Any = None,
    invert: bool = False,
    settable: bool = False,
    default_on: Any = True,
    default_off: Any = False,
) -> ConverterFactory:
    def factory(prop: str, expose: Expose) -> ConverterSpec:
        value_on = on if on is not None else (expose.value_on if expose.value_on is not None else default_on)
        value_off = off if off is not None else (expose.value_off if expose.value_off is not None else default_off)

        def z2m_to_homey(value: Any, state: dict[str, Any]) -> dict[str, Any]:
            return {capability: (value == value_on) != invert}

        def homey_to_z2m(values: dict[str, Any], read: ReadCapability) -> dict[str, Any] | None:
            v = values.get(capability)
            if v is None:
                return None
            return {prop: value_on if bool(v) != invert else value_off}

        return ConverterSpec(
            kind=ConverterKind.BINARY,
            capabilities=(capability,),
            z2m_to_homey=z2m_to_homey,
            homey_to_z2m=homey_to_z2m if settable else None,
        )

    return factory


def _switch(capability: str) -> ConverterFactory:
    return _binary(capability, settable=True, default_on="ON", default_off="OFF")


def _enum(capability: str) -> ConverterFactory:
    def factory(prop: str, expose: Expose) -> ConverterSpec:
        def z2m_to_homey(value: Any, state: dict[str, Any]) -> dict[str, Any]:
            return {capability: value}

        def homey_to_z2m(values: dict[str, Any], read: ReadCapability) -> dict[str, Any] | None:
            v = values.get(capability)
            if v is None:
                return None
            return {prop: v}

        return ConverterSpec(
            kind=ConverterKind.ENUM,
            capabilities=(capability,),
            z2m_to_homey=z2m_to_homey,
            homey_to_z2m=homey_to_z2m,
        )

    return factory


def _text(capability: str) -> ConverterFactory:
    def factory(prop: str, expose: Expose) -> ConverterSpec:
        def z2m_to_homey(value: Any, state: dict[str, Any]) -> dict[str, Any]:
            return {capability: "" if value is None else str(value)}

        return ConverterSpec(kind=ConverterKind.TEXT, capabilities=(capability,), z2m_to_homey=z2m_to_homey)

    return factory


def _voltage(prop: str, expose: Expose) -> ConverterSpec:
    capability = "measure_voltage" if expose.unit == "V" else "measure_voltage_mv"
    return _number(capability)(prop, expose)


COLOR_CAPABILITIES = ("light_hue", "light_saturation", "light_mode")


def _color(prop: str, expose: Expose) -> ConverterSpec:
    def z2m_to_homey(value: Any, state: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        hue: float | None = None
        sat: float | None = None
        x, y = value.get("x"), value.get("y")
        if x is not None and y is not None:
            h, s = xy_to_hue_sat(float(x), float(y))
            hue, sat = h / 360.0, s / 100.0
        else:
            if value.get("hue") is not None:
                hue = float(value["hue"]) / 360.0
            if value.get("saturation") is not None:
                sat = float(value["saturation"]) / 100.0
        mode = "temperature" if state.get("color_mode") == "color_temp" else "color"
        return {"light_hue": hue, "light_saturation": sat, "light_mode": mode}

    def homey_to_z2m(values: dict[str, Any], read: ReadCapability) -> dict[str, Any] | None:
        if values.get("light_mode") == "temperature":
            return None
        hue = to_number(values.get("light_hue"))
        sat = to_number(values.get("light_saturation"))
        if hue is None or sat is None:
            return None
        if expose.name == "color_hs":
            return {"color": {"hue": hue * 360, "saturation": sat * 100}}
        x, y = hs_to_xy(hue, sat)
        return {"color": {"x": x, "y": y}}

    return ConverterSpec(
        kind=ConverterKind.MULTI,
        capabilities=COLOR_CAPABILITIES,
        z2m_to_homey=z2m_to_homey,
        homey_to_z2m=homey_to_z2m,
    )


_REGISTRY: dict[str, ConverterFactory] = {
    # standard number capabilities
    "current_heating_setpoint": _number("target_temperature", settable=True),
    "temperature": _number("measure_temperature"),
    "occupied_heating_setpoint": _number("target_temperature.local", settable=True),
    "local_temperature": _number("measure_temperature.local"),
    "frost_protection_temperature": _number("target_temperature.frost_protection", settable=True),
    "device_temperature": _number("measure_temperature.device"),
    "co": _number("measure_co"),
    "co2": _number("measure_co2"),
    "smoke_concentration": _number("measure_pm1"),
    "pm10": _number("measure_pm10"),
    "pm25": _number("measure_pm25"),
    "humidity": _number("measure_humidity"),
    "soil_moisture": _number("measure_humidity.soil"),
    "pressure": _number("measure_pressure"),
    "battery": _number("measure_battery"),
    "power": _number("measure_power"),
    "voltage": _voltage,
    "current": _number("measure_current"),
    "illuminance": _number("measure_luminance"),
    "illuminance_lux": _number("measure_luminance.lux"),
    "water_flow": _number("measure_water"),
    "energy": _number("meter_power"),
    "water_consumed": _number("meter_water"),
    "position": _scaled("windowcoverings_set", PERCENT),
    "valve_state": _scaled("valve_state", PERCENT),
    "target_distance": _number("target_distance"),
    # light
    "brightness": _scaled("dim", BRIGHTNESS),
    "brightness_l1": _scaled("dim.l1", BRIGHTNESS),
    "brightness_l2": _scaled("dim.l2", BRIGHTNESS),
    "color_temp": _scaled("light_temperature", COLOR_TEMP),
    "color": _color,
    # air quality
    "voc": _number("measure_tvoc"),
    "voc_index": _number("measure_tvoc_index"),
    "aqi": _number("measure_aqi"),
    # switches
    "state": _switch("onoff"),
    "state_l1": _switch("onoff.l1"),
    "state_l2": _switch("onoff.l2"),
    "state_l3": _switch("onoff.l3"),
    "state_l4": _switch("onoff.l4"),
    "state_left": _switch("onoff.left"),
    "state_center": _switch("onoff.center"),
    "state_right": _switch("onoff.right"),
    "backlight_mode": _switch("onoff.backlight"),
    "system_mode": _binary("onoff.system_mode", on="heat", off="off", settable=True),
    "indicator": _switch("onoff.indicator"),
    "heartbeat": _switch("onoff.heartbeat"),
    "pre_alarm": _switch("onoff.pre_alarm"),
    "self_test": _switch("onoff.self_test"),
    "open_window": _binary("alarm_generic.open_window", default_on="ON", default_off="OFF"),
    # alarms
    "device_fault": _binary("alarm_problem"),
    "vibration": _binary("alarm_vibration"),
    "gas": _binary("alarm_gas"),
    "occupancy": _binary("alarm_occupancy"),
    "presence": _binary("alarm_presence"),
    "contact": _binary("alarm_contact", invert=True),
    "carbon_monoxide": _binary("alarm_co"),
    "tamper": _binary("alarm_tamper"),
    "smoke": _binary("alarm_smoke"),
    "water_leak": _binary("alarm_water"),
    "rain": _binary("alarm_water.rain"),
    "battery_low": _binary("alarm_battery"),
    "lock": _binary("locked", on="LOCK", off="UNLOCK", settable=True),
    "child_lock": _binary("locked.child", on="LOCK", off="UNLOCK", settable=True),
    "garage_door_contact": _binary("garagedoor_closed"),
    # custom numbers
    "linkquality": _number("measure_linkquality"),
    "strength": _number("meter_strength"),
    "angle_x": _number("meter_angle_x"),
    "angle_y": _number("meter_angle_y"),
    "angle_z": _number("meter_angle_z"),
    "x_axis": _number("meter_axis_x"),
    "y_axis": _number("meter_axis_y"),
    "z_axis": _number("meter_axis_z"),
    "action_group": _number("action_group"),
    # custom strings
    "action": _text("action"),
    "running_state": _text("running_state"),
    "motion_state": _text("motion_state"),
    "siren_state": _text("siren_state"),
    # settable enums
    "preset": _enum("preset"),
    "power_on_behavior": _enum("power_on_behavior"),
    "color_power_on_behavior": _enum("color_power_on_behavior"),
    "power_outage_memory": _enum("power_outage_memory"),
    "indicator_mode": _enum("indicator_mode"),
    "switch_type": _enum("switch_type"),
    "switch_type_l1": _enum("switch_type.l1"),
    "switch_type_l2": _enum("switch_type.l2"),
    "switch_type_left": _enum("switch_type.left"),
    "switch_type_center": _enum("switch_type.center"),
    "switch_type_right": _enum("switch_type.right"),
    "sensor": _enum("sensor"),
    "effect": _enum("effect"),
    "alarm": _enum("alarm_sound"),
    "sensitivity": _enum("sensitivity"),
    "motion_sensitivity": _enum("sensitivity.motion"),
    "pilot_wire_mode": _enum("pilot_wire_mode"),
}


def known_properties() -> list[str]:
    return list(_REGISTRY)


def lookup(prop: str, expose: Expose) -> ConverterSpec:
    factory = _REGISTRY.get(prop)
    if factory is None:
        return UNSUPPORTED
    return factory(prop, expose)


def get_converters(prop: str, expose: Expose) -> Converters | None:
    spec = lookup(prop, expose)
    if not spec.supported:
        return None

    caps = spec.capabilities
    outbound = spec.homey_to_z2m
    if outbound is None:
        return Converters(capabilities=caps, z2m_to_homey=spec.z2m_to_homey, homey_to_z2m=None)

    def homey_to_z2m(changed: dict[str, Any], read: ReadCapability) -> dict[str, Any] | None:
        # siblings that did not change are filled in with their current value
        merged: dict[str, Any] = {}
        for cap in caps:
            v = changed.get(cap)
            merged[cap] = v if v is not None else read(cap)
        return outbound(merged, read)

    return Converters(capabilities=caps, z2m_to_homey=spec.z2m_to_homey, homey_to_z2m=homey_to_z2m)
