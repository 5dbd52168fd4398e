# geo.py
"""Spherical geometry for 2dsphere indexes and geo query operators.

Coordinates are [longitude, latitude] in degrees. Distances are great-circle
distances on a sphere with Earth's equatorial radius, returned in metres.
Containment and intersection tests treat polygon edges as straight lines in
lon/lat space, which is accurate for the small areas queries usually cover.
"""
import math
from typing import List, Optional, Sequence, Tuple

from .errors import InvalidQueryError
from .utils import is_number

EARTH_RADIUS_KM = 6378.1
EARTH_RADIUS_M = EARTH_RADIUS_KM * 1000.0

Point = Tuple[float, float]


# =========================
# Parsing
# =========================
def _coerce(value) -> Optional[float]:
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None

def to_point(pair) -> Optional[Point]:
    if not isinstance(pair, (list, tuple)) or len(pair) < 2:
        return None
    lng, lat = _coerce(pair[0]), _coerce(pair[1])
    if lng is None or lat is None:
        return None
    return (lng, lat)

def parse_geometry(value) -> Optional[Tuple[str, object]]:
    """Return (kind, coordinates) for GeoJSON or a legacy [lng, lat] pair, else None."""
    if isinstance(value, dict) and "type" in value:
        kind, coords = value.get("type"), value.get("coordinates")
        if kind == "Point":
            point = to_point(coords)
            return ("Point", point) if point else None
        if kind == "LineString":
            points = [to_point(p) for p in coords or []]
            return ("LineString", points) if len(points) >= 2 and all(points) else None
        if kind == "Polygon":
            if not coords or not isinstance(coords, list):
                return None
            ring = [to_point(p) for p in coords[0] or []]
            return ("Polygon", ring) if len(ring) >= 4 and all(ring) else None
        return None
    point = to_point(value)
    return ("Point", point) if point else None

def require_geometry(value, operator: str) -> Tuple[str, object]:
    geom = parse_geometry(value)
    if geom is None:
        raise InvalidQueryError(f"{operator} requires a valid GeoJSON geometry or [lng, lat] pair.")
    return geom


# =========================
# Distance
# =========================
def central_angle(a: Point, b: Point) -> float:
    """Great-circle angle between two points in radians (haversine)."""
    lng1, lat1 = map(math.radians, a)
    lng2, lat2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * math.asin(min(1.0, math.sqrt(h)))

def distance_m(a: Point, b: Point) -> float:
    return central_angle(a, b) * EARTH_RADIUS_M

def km_to_radians(km: float) -> float:
    return km / EARTH_RADIUS_KM

def nearest_on_segment(origin: Point, a: Point, b: Point) -> Point:
    """Closest point of segment a-b to origin, projected around origin's latitude."""
    scale = math.cos(math.radians(origin[1]))
    ax, ay = (a[0] - origin[0]) * scale, a[1] - origin[1]
    dx, dy = (b[0] - a[0]) * scale, b[1] - a[1]
    length2 = dx * dx + dy * dy
    if length2 == 0:
        return a
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length2))
    return (a[0] + t * (b[0] - a[0]), a[1] + t * (b[1] - a[1]))

def geometry_distance(geom: Tuple[str, object], origin: Point) -> float:
    """Distance from origin to the nearest point of a geometry (0 inside a polygon)."""
    kind, coords = geom
    if kind == "Point":
        return distance_m(origin, coords)
    if kind == "Polygon" and point_in_polygon(origin, coords):
        return 0.0
    return min(distance_m(origin, nearest_on_segment(origin, a, b))
               for a, b in zip(coords, coords[1:]))


# =========================
# Containment and intersection
# =========================
def point_in_polygon(point: Point, ring: Sequence[Point]) -> bool:
    """Ray casting; points on an edge count as inside."""
    x, y = point
    inside = False
    n = len(ring)
    for i in range(n):
        (x1, y1), (x2, y2) = ring[i], ring[(i + 1) % n]
        if _on_segment(point, (x1, y1), (x2, y2)):
            return True
        if (y1 > y) != (y2 > y):
            xcross = x1 + (y - y1) * (x2 - x1) / (y2 - y1)
            if x < xcross:
                inside = not inside
    return inside

def _orientation(p: Point, q: Point, r: Point) -> float:
    return (q[0] - p[0]) * (r[1] - p[1]) - (q[1] - p[1]) * (r[0] - p[0])

def _on_segment(p: Point, a: Point, b: Point, eps: float = 1e-12) -> bool:
    if abs(_orientation(a, b, p)) > eps:
        return False
    return min(a[0], b[0]) - eps <= p[0] <= max(a[0], b[0]) + eps and \
        min(a[1], b[1]) - eps <= p[1] <= max(a[1], b[1]) + eps

def segments_intersect(p1: Point, p2: Point, q1: Point, q2: Point) -> bool:
    d1 = _orientation(q1, q2, p1)
    d2 = _orientation(q1, q2, p2)
    d3 = _orientation(p1, p2, q1)
    d4 = _orientation(p1, p2, q2)
    if ((d1 > 0) != (d2 > 0)) and ((d3 > 0) != (d4 > 0)) and d1 and d2 and d3 and d4:
        return True
    return (_on_segment(p1, q1, q2) or _on_segment(p2, q1, q2)
            or _on_segment(q1, p1, p2) or _on_segment(q2, p1, p2))

def _edges(kind: str, coords) -> List[Tuple[Point, Point]]:
    if kind == "Point":
        return []
    pts = list(coords)
    return list(zip(pts, pts[1:]))

def _vertices(kind: str, coords) -> List[Point]:
    return [coords] if kind == "Point" else list(coords)

def geometries_intersect(a: Tuple[str, object], b: Tuple[str, object]) -> bool:
    (ka, ca), (kb, cb) = a, b
    if ka == "Point" and kb == "Point":
        return ca == cb
    if ka == "Point":
        return _point_touches(ca, kb, cb)
    if kb == "Point":
        return _point_touches(cb, ka, ca)
    for e1 in _edges(ka, ca):
        for e2 in _edges(kb, cb):
            if segments_intersect(e1[0], e1[1], e2[0], e2[1]):
                return True
    if ka == "Polygon" and any(point_in_polygon(p, ca) for p in _vertices(kb, cb)):
        return True
    if kb == "Polygon" and any(point_in_polygon(p, cb) for p in _vertices(ka, ca)):
        return True
    return False

def _point_touches(point: Point, kind: str, coords) -> bool:
    if kind == "Polygon":
        return point_in_polygon(point, coords)
    return any(_on_segment(point, a, b) for a, b in _edges(kind, coords))

def geometry_within(geom: Tuple[str, object], ring: Sequence[Point]) -> bool:
    kind, coords = geom
    return all(point_in_polygon(p, ring) for p in _vertices(kind, coords))

def within_center_sphere(geom: Tuple[str, object], center: Point, radians: float) -> bool:
    kind, coords = geom
    return all(central_angle(center, p) <= radians for p in _vertices(kind, coords))

def within_box(geom: Tuple[str, object], corner1: Point, corner2: Point) -> bool:
    lo_x, hi_x = sorted((corner1[0], corner2[0]))
    lo_y, hi_y = sorted((corner1[1], corner2[1]))
    kind, coords = geom
    return all(lo_x <= x <= hi_x and lo_y <= y <= hi_y for x, y in _vertices(kind, coords))


# =========================
# Query operator evaluation
# =========================
def near_spec(arg, operator: str = "$near") -> Tuple[Point, Optional[float], Optional[float]]:
    """Parse a $near/$nearSphere argument into (origin, max_distance, min_distance)."""
    if isinstance(arg, dict) and "$geometry" in arg:
        kind, origin = require_geometry(arg["$geometry"], operator)
        max_d, min_d = arg.get("$maxDistance"), arg.get("$minDistance")
    else:
        kind, origin = require_geometry(arg, operator)
        max_d = min_d = None
    if kind != "Point":
        raise InvalidQueryError(f"{operator} requires a Point.")
    return origin, max_d, min_d

def eval_geo_operator(value, op: str, arg) -> bool:
    geom = parse_geometry(value)
    if geom is None:
        return False
    if op in ("$near", "$nearSphere"):
        origin, max_d, min_d = near_spec(arg, op)
        d = geometry_distance(geom, origin)
        if max_d is not None and d > max_d:
            return False
        if min_d is not None and d < min_d:
            return False
        return True
    if op == "$geoWithin":
        if not isinstance(arg, dict):
            raise InvalidQueryError("$geoWithin requires a shape specifier.")
        if "$geometry" in arg:
            kind, ring = require_geometry(arg["$geometry"], op)
            if kind != "Polygon":
                raise InvalidQueryError("$geoWithin $geometry must be a Polygon.")
            return geometry_within(geom, ring)
        if "$centerSphere" in arg:
            center, radius = arg["$centerSphere"]
            center = to_point(center)
            if center is None or not is_number(radius):
                raise InvalidQueryError("$centerSphere requires [[lng, lat], radians].")
            return within_center_sphere(geom, center, radius)
        if "$box" in arg:
            c1, c2 = (to_point(p) for p in arg["$box"])
            return within_box(geom, c1, c2)
        if "$polygon" in arg:
            ring = [to_point(p) for p in arg["$polygon"]]
            return geometry_within(geom, ring)
        raise InvalidQueryError("Unsupported $geoWithin shape.")
    if op == "$geoIntersects":
        if not isinstance(arg, dict) or "$geometry" not in arg:
            raise InvalidQueryError("$geoIntersects requires $geometry.")
        return geometries_intersect(geom, require_geometry(arg["$geometry"], op))
    raise InvalidQueryError(f"Unsupported geo operator: {op}")

GEO_OPERATORS = {"$near", "$nearSphere", "$geoWithin", "$geoIntersects"}
