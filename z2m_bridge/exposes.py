from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

ACCESS_STATE = 0b00001
ACCESS_SET = 0b00010
ACCESS_GET = 0b00100

TYPE_BINARY = "binary"
TYPE_NUMERIC = "numeric"
TYPE_ENUM = "enum"
TYPE_TEXT = "text"
TYPE_COMPOSITE = "composite"
TYPE_LIST = "list"


@dataclass(frozen=True)
class Expose:
    type: str
    property: str = ""
    name: str = ""
    access: int = 0
    unit: str | None = None
    value_on: Any = None
    value_off: Any = None
    value_min: float | None = None
    value_max: float | None = None
    values: tuple[Any, ...] | None = None
    features: tuple["Expose", ...] = field(default_factory=tuple)

    @builtins.property
    def settable(self) -> bool:
        return (int(self.access or 0) & ACCESS_SET) == ACCESS_SET

    @builtins.property
    def gettable(self) -> bool:
        return (int(self.access or 0) & ACCESS_GET) == ACCESS_GET

    @builtins.property
    def is_numeric(self) -> bool:
        return self.type == TYPE_NUMERIC

    @builtins.property
    def is_enum(self) -> bool:
        return self.type == TYPE_ENUM

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Expose":
        if not isinstance(raw, dict):
            raise ValueError("expose must be an object")
        values = raw.get("values")
        features = raw.get("features") or []
        unit = raw.get("unit")
        return cls(
            # gateway uses "text"; older payloads and the host docs say "string"
            type="text" if str(raw.get("type") or "") == "string" else str(raw.get("type") or ""),
            property=str(raw.get("property") or ""),
            name=str(raw.get("name") or ""),
            access=int(raw.get("access") or 0),
            unit=str(unit) if unit is not None else None,
            value_on=raw.get("value_on"),
            value_off=raw.get("value_off"),
            value_min=_opt_float(raw.get("value_min")),
            value_max=_opt_float(raw.get("value_max")),
            values=tuple(values) if isinstance(values, list) else None,
            features=tuple(cls.from_dict(f) for f in features if isinstance(f, dict)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "access": int(self.access)}
        if self.property:
            out["property"] = self.property
        if self.name:
            out["name"] = self.name
        if self.unit is not None:
            out["unit"] = self.unit
        if self.value_on is not None:
            out["value_on"] = self.value_on
        if self.value_off is not None:
            out["value_off"] = self.value_off
        if self.value_min is not None:
            out["value_min"] = self.value_min
        if self.value_max is not None:
            out["value_max"] = self.value_max
        if self.values is not None:
            out["values"] = list(self.values)
        if self.features:
            out["features"] = [f.to_dict() for f in self.features]
        return out


def _opt_float(v: Any) -> float | None:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def parse_exposes(raw: Iterable[Any] | None) -> list[Expose]:
    out: list[Expose] = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        out.append(Expose.from_dict(item))
    return out


def iter_features_first(exposes: Iterable[Expose]) -> Iterator[Expose]:
    """Yield nested features (depth first) before the expose that owns them."""
    for expose in exposes:
        if expose.features:
            yield from iter_features_first(expose.features)
        yield expose
