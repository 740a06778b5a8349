from __future__ import annotations

from io import BytesIO
import logging
import math
from typing import Dict, List, Tuple

import numpy as np
from PIL import Image

from grib_decoder import DecodedGrid, GridGeometry

LOGGER = logging.getLogger("mrms_radar.radar_render")

RGBA = Tuple[int, int, int, int]

TRANSPARENT: RGBA = (0, 0, 0, 0)

# (upper bound exclusive in dBZ, colour); values at or above the last bound use REFLECTIVITY_OVERFLOW_COLOR.
REFLECTIVITY_COLOR_TABLE: Tuple[Tuple[float, RGBA], ...] = (
    (5.0, (0, 0, 0, 0)),
    (10.0, (4, 233, 231, 180)),
    (15.0, (1, 159, 244, 200)),
    (20.0, (3, 0, 244, 220)),
    (25.0, (2, 253, 2, 230)),
    (30.0, (1, 197, 1, 240)),
    (35.0, (0, 142, 0, 250)),
    (40.0, (253, 248, 2, 255)),
    (45.0, (229, 188, 0, 255)),
    (50.0, (253, 139, 0, 255)),
    (55.0, (212, 0, 0, 255)),
    (60.0, (188, 0, 0, 255)),
    (65.0, (248, 0, 253, 255)),
)
REFLECTIVITY_OVERFLOW_COLOR: RGBA = (153, 85, 201, 255)

REFLECTIVITY_DESCRIPTIONS = (
    "Light precipitation",
    "Light rain/snow",
    "Light to moderate rain",
    "Moderate rain",
    "Moderate to heavy rain",
    "Heavy rain",
    "Heavy rain",
    "Very heavy rain",
    "Intense rain",
    "Extreme rain/hail",
    "Severe weather",
    "Severe weather",
    "Extreme severe weather",
)

_THRESHOLDS = np.array([bound for bound, _ in REFLECTIVITY_COLOR_TABLE], dtype=np.float64)
_COLORS = np.array(
    [color for _, color in REFLECTIVITY_COLOR_TABLE] + [REFLECTIVITY_OVERFLOW_COLOR],
    dtype=np.uint8,
)


def color_of(value: float) -> RGBA:
    if math.isnan(value):
        return TRANSPARENT
    for upper_bound, color in REFLECTIVITY_COLOR_TABLE:
        if value < upper_bound:
            return color
    return REFLECTIVITY_OVERFLOW_COLOR


def apply_reflectivity_colormap(values: np.ndarray) -> np.ndarray:
    flat = np.asarray(values, dtype=np.float64).ravel()
    # digitize with right=False returns the index of the first bound strictly greater than the value.
    idx = np.digitize(flat, _THRESHOLDS, right=False)
    rgba = _COLORS[idx]
    rgba[np.isnan(flat)] = TRANSPARENT
    return rgba


def render_rgba(grid: DecodedGrid) -> bytes:
    """Row-major RGBA bytes, four per cell, in decoded scan order (no flip)."""
    rgba = apply_reflectivity_colormap(grid.values)
    return rgba.tobytes()


def encode_png(grid: DecodedGrid) -> bytes:
    height, width = grid.shape
    LOGGER.debug("Rendering PNG %dx%d (%d values)", width, height, grid.values.size)
    rgba = apply_reflectivity_colormap(grid.values).reshape(height, width, 4)
    image = Image.fromarray(rgba, mode="RGBA")
    buf = BytesIO()
    image.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


def normalize_longitude(lon: float) -> float:
    return lon - 360.0 if lon > 180.0 else lon


def overlay_bounds(geometry: GridGeometry) -> Dict[str, float]:
    lon_a = normalize_longitude(geometry.lon_first)
    lon_b = normalize_longitude(geometry.lon_last)
    return {
        "south": min(geometry.lat_first, geometry.lat_last),
        "west": min(lon_a, lon_b),
        "north": max(geometry.lat_first, geometry.lat_last),
        "east": max(lon_a, lon_b),
    }


def reflectivity_legend() -> List[Dict[str, object]]:
    legend: List[Dict[str, object]] = []
    bounds = [bound for bound, _ in REFLECTIVITY_COLOR_TABLE]
    colors = [color for _, color in REFLECTIVITY_COLOR_TABLE[1:]] + [REFLECTIVITY_OVERFLOW_COLOR]
    for i, (color, description) in enumerate(zip(colors, REFLECTIVITY_DESCRIPTIONS)):
        lower = bounds[i]
        upper = bounds[i + 1] if i + 1 < len(bounds) else None
        label = f"{lower:g}-{upper:g} dBZ" if upper is not None else f"{lower:g}+ dBZ"
        legend.append(
            {
                "range": label,
                "min": lower,
                "max": upper,
                "color": [int(c) for c in color],
                "description": description,
            }
        )
    return legend
