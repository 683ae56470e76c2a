from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.models.marketplace import ServiceRequest
from marketplace.services.distance import distance_km
from marketplace.services.request_store import biddable_filters
from marketplace.utils import geohash

logger = logging.getLogger(__name__)

# Distances are rounded to 0.01 km, so pad the box by half a step to keep it a superset.
_ROUNDING_PAD_KM = 0.005


@dataclass(frozen=True)
class NearbyMatch:
    request: ServiceRequest
    distance_km: float


def nearby(
    db: Session,
    engineer_id: str,
    lat: float,
    lng: float,
    radius_km: float,
    *,
    limit: int | None = None,
) -> list[NearbyMatch]:
    """Biddable requests within ``radius_km`` of (lat, lng), nearest first.

    Never returns the engineer's own requests or already-assigned ones.
    """
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise ValueError("coordinates out of range")
    if radius_km is None or radius_km <= 0:
        raise ValueError("radius_km must be positive")

    settings = get_settings()
    radius = float(radius_km)
    if radius > settings.nearby_max_radius_km:
        raise ValueError(f"radius_km must not exceed {settings.nearby_max_radius_km:g}")
    page_size = int(limit or settings.nearby_page_size)

    box = geohash.bounding_box(lat, lng, radius + _ROUNDING_PAD_KM)
    conditions = list(biddable_filters(engineer_id))
    conditions.append(ServiceRequest.lat.between(box.min_lat, box.max_lat))
    conditions.append(or_(*[and_(ServiceRequest.lng >= lo, ServiceRequest.lng <= hi) for lo, hi in box.lng_ranges]))

    cells = geohash.covering_cells(box)
    if cells is not None:
        conditions.append(or_(*[ServiceRequest.geohash.startswith(cell, autoescape=True) for cell in sorted(cells)]))

    candidates = db.execute(select(ServiceRequest).where(*conditions)).scalars().all()

    matches = []
    for req in candidates:
        dist = distance_km(lat, lng, req.lat, req.lng)
        if dist <= radius:
            matches.append(NearbyMatch(request=req, distance_km=dist))
    matches.sort(key=lambda m: (m.distance_km, m.request.created_at))
    logger.debug(
        "nearby engineer=%s radius=%s cells=%s candidates=%s matches=%s",
        engineer_id,
        radius,
        len(cells) if cells is not None else None,
        len(candidates),
        len(matches),
    )
    return matches[:page_size]
