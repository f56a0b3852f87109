"""Nearest-neighbour lookup over documents carrying a ``{lat, lng}`` point.

The store prefilters on a bounding box around the query point, split in two
where it crosses the antimeridian; exact great-circle distances are
computed here and used for the final cut and ordering.
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple

from .keyspace import Keyspace, Where

EARTH_RADIUS_M = 6_371_008.8


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(lat: float, lng: float, radius_m: float) -> Tuple[float, float, float, float]:
    """Return ``(min_lat, max_lat, min_lng, max_lng)`` enclosing the circle."""
    d_lat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-9:
        d_lng = 180.0
    else:
        d_lng = min(180.0, math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat)))
    return lat - d_lat, lat + d_lat, lng - d_lng, lng + d_lng


def longitude_ranges(min_lng: float, max_lng: float) -> List[Tuple[float, float]]:
    """Split a longitude span that crosses the antimeridian into ranges within [-180, 180]."""
    if max_lng - min_lng >= 360.0:
        return [(-180.0, 180.0)]
    if min_lng < -180.0:
        return [(min_lng + 360.0, 180.0), (-180.0, max_lng)]
    if max_lng > 180.0:
        return [(min_lng, 180.0), (-180.0, max_lng - 360.0)]
    return [(min_lng, max_lng)]


async def nearest(
    keyspace: Keyspace,
    lat: float,
    lng: float,
    max_distance_m: float,
    where: Sequence[Where] = (),
    geo_field: str = "geo",
    limit: Optional[int] = None,
) -> List[Tuple[dict, float]]:
    """Documents within *max_distance_m* of the point, closest first.

    Returns ``(row, distance_m)`` pairs where ``row`` has the usual
    ``{"id": ..., <collection_name>: {...}}`` shape.
    """
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, max_distance_m)
    rows: Dict[str, dict] = {}
    for lo, hi in longitude_ranges(min_lng, max_lng):
        conditions = list(where) + [
            Where(f"{geo_field}.lat", ">=", min_lat),
            Where(f"{geo_field}.lat", "<=", max_lat),
            Where(f"{geo_field}.lng", ">=", lo),
            Where(f"{geo_field}.lng", "<=", hi),
        ]
        for row in await keyspace.find(conditions):
            rows.setdefault(row["id"], row)

    hits: List[Tuple[dict, float]] = []
    for row in rows.values():
        doc = row.get(keyspace.collection_name) or {}
        point = doc.get(geo_field)
        if not point:
            continue
        distance = haversine_m(lat, lng, point["lat"], point["lng"])
        if distance <= max_distance_m:
            hits.append((row, distance))

    hits.sort(key=lambda hit: hit[1])
    if limit is not None:
        hits = hits[:limit]
    return hits
