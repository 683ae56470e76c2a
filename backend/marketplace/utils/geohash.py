"""
Geohash helpers used as the spatial index for nearby search.

Requests store a precision-9 geohash (~5m cells). A search computes the set of
coarser cells covering the bounding box of its circle and filters candidates
with indexed prefix matches.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

STORED_PRECISION = 9
MAX_COVER_CELLS = 64


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    # One or two (min_lng, max_lng) ranges; two when the box crosses the antimeridian.
    lng_ranges: tuple[tuple[float, float], ...]


def encode(lat: float, lng: float, precision: int = STORED_PRECISION) -> str:
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    bits = (16, 8, 4, 2, 1)
    bit = 0
    ch = 0
    is_lng = True
    while len(chars) < precision:
        if is_lng:
            mid = (lng_range[0] + lng_range[1]) / 2
            if lng >= mid:
                ch |= bits[bit]
                lng_range[0] = mid
            else:
                lng_range[1] = mid
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if lat >= mid:
                ch |= bits[bit]
                lat_range[0] = mid
            else:
                lat_range[1] = mid
        is_lng = not is_lng
        if bit < 4:
            bit += 1
        else:
            chars.append(_BASE32[ch])
            bit = 0
            ch = 0
    return "".join(chars)


def cell_size(precision: int) -> tuple[float, float]:
    """(lat_degrees, lng_degrees) spanned by one cell at ``precision``."""
    total_bits = 5 * precision
    lng_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (2**lat_bits), 360.0 / (2**lng_bits)


def bounding_box(lat: float, lng: float, radius_km: float, earth_radius_km: float = 6371.0) -> BoundingBox:
    """Smallest lat/lng box containing every point within ``radius_km`` of (lat, lng)."""
    delta = radius_km / earth_radius_km
    lat_r = math.radians(lat)
    min_lat = math.degrees(lat_r - delta)
    max_lat = math.degrees(lat_r + delta)
    if min_lat <= -90.0 or max_lat >= 90.0:
        # The circle covers a pole: every longitude is in range.
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), ((-180.0, 180.0),))

    dlng = math.degrees(math.asin(min(1.0, math.sin(delta) / math.cos(lat_r))))
    lo = lng - dlng
    hi = lng + dlng
    if hi - lo >= 360.0:
        ranges: tuple[tuple[float, float], ...] = ((-180.0, 180.0),)
    elif lo < -180.0:
        ranges = ((lo + 360.0, 180.0), (-180.0, hi))
    elif hi > 180.0:
        ranges = ((lo, 180.0), (-180.0, hi - 360.0))
    else:
        ranges = ((lo, hi),)
    return BoundingBox(min_lat, max_lat, ranges)


def _samples(lo: float, hi: float, step: float) -> list[float]:
    # Points spaced one cell apart plus the far edge hit every cell the interval touches.
    points = []
    value = lo
    while value < hi:
        points.append(value)
        value += step
    points.append(hi)
    return points


def _cell_count(box: BoundingBox, precision: int) -> int:
    lat_step, lng_step = cell_size(precision)
    rows = math.ceil((box.max_lat - box.min_lat) / lat_step) + 1
    cols = sum(math.ceil((hi - lo) / lng_step) + 1 for lo, hi in box.lng_ranges)
    return rows * cols


def covering_cells(box: BoundingBox, max_cells: int = MAX_COVER_CELLS) -> Optional[set[str]]:
    """Geohash prefixes covering ``box`` at the finest precision that stays within ``max_cells``.

    Returns None when even single-character cells exceed the cell limit, meaning the
    caller should skip the prefix filter and rely on the bounding box alone.
    """
    for precision in range(STORED_PRECISION, 0, -1):
        if _cell_count(box, precision) <= max_cells:
            break
    else:
        return None

    lat_step, lng_step = cell_size(precision)
    # Geohash cells are half-open at the top edge; 90/180 encode into the last cell anyway.
    cells: set[str] = set()
    for sample_lat in _samples(box.min_lat, box.max_lat, lat_step):
        for lo, hi in box.lng_ranges:
            for sample_lng in _samples(lo, hi, lng_step):
                cells.add(encode(sample_lat, sample_lng, precision))
    return cells
