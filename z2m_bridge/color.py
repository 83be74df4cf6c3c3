from __future__ import annotations

import colorsys
import math


def xy_to_hue_sat(x: float, y: float) -> tuple[float, float]:
    """CIE 1931 xy (full brightness) to hue [0-360] and saturation [0-100]."""
    if y <= 0:
        return 0.0, 0.0
    z = 1.0 - x - y
    big_y = 1.0
    big_x = (big_y / y) * x
    big_z = (big_y / y) * z

    # Wide gamut D65 matrix, same one the gateway uses for its xy output
    r = big_x * 1.656492 - big_y * 0.354851 - big_z * 0.255038
    g = -big_x * 0.707196 + big_y * 1.655397 + big_z * 0.036152
    b = big_x * 0.051713 - big_y * 0.121364 + big_z * 1.011530

    r, g, b = (_gamma_encode(c) for c in (r, g, b))
    m = max(r, g, b)
    if m > 1.0:
        r, g, b = r / m, g / m, b / m
    r, g, b = (max(0.0, c) for c in (r, g, b))

    h, s, _v = colorsys.rgb_to_hsv(r, g, b)
    return h * 360.0, s * 100.0


def hs_to_xy(hue: float, saturation: float) -> tuple[float, float]:
    """Hue and saturation as host fractions [0-1] to CIE xy."""
    r, g, b = colorsys.hsv_to_rgb(_clamp01(hue), _clamp01(saturation), 1.0)
    r, g, b = (_gamma_decode(c) for c in (r, g, b))

    big_x = r * 0.649926 + g * 0.103455 + b * 0.197109
    big_y = r * 0.234327 + g * 0.743075 + b * 0.022598
    big_z = r * 0.0 + g * 0.053077 + b * 1.035763
    total = big_x + big_y + big_z
    if total == 0:
        return 0.0, 0.0
    return round(big_x / total, 4), round(big_y / total, 4)


def _gamma_encode(c: float) -> float:
    if c <= 0.0031308:
        return 12.92 * c
    return 1.055 * math.pow(c, 1.0 / 2.4) - 0.055


def _gamma_decode(c: float) -> float:
    if c > 0.04045:
        return math.pow((c + 0.055) / 1.055, 2.4)
    return c / 12.92


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, float(v)))
