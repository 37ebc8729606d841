"""
Geometry helpers for the meeting-zone pipeline.

Coordinates are treated as planar (lon, lat) for clipping. That holds at
city/regional scale and breaks down near the poles and the antimeridian,
which is not handled here.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple, Union

from geopy.distance import geodesic
from shapely.geometry import Polygon as ShapelyPolygon
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient
from shapely.ops import unary_union
from shapely.validation import make_valid

from .errors import EmptyBoundary
from .models import GeoPoint, Location, MultiPolygon, Polygon, Ring

logger = logging.getLogger(__name__)

MIN_RING_POINTS = 4  # 3 distinct vertices + closing point

GeometryInput = Union[Polygon, MultiPolygon, Dict, Sequence, None]


# --- Boundary normalizer ---
def parse_reachable_range(payload: Optional[Dict]) -> List[Tuple[float, float]]:
    """
    Extract (lon, lat) pairs from a route-range response.
    Returns an empty list when the response has no reachable range.
    """
    if not payload:
        return []
    boundary = (payload.get('reachableRange') or {}).get('boundary') or []
    return [(float(p['longitude']), float(p['latitude'])) for p in boundary]


def normalize_boundary(points: Sequence[Sequence[float]]) -> Polygon:
    """
    Turn raw (lon, lat) boundary points into a closed single-ring Polygon.
    Raises EmptyBoundary when there are no points.
    """
    coords = [(float(p[0]), float(p[1])) for p in points]
    if not coords:
        raise EmptyBoundary("reachable range has no boundary points")
    if coords[0] != coords[-1]:
        coords.append(coords[0])
    return Polygon(exterior=tuple(GeoPoint.from_lon_lat(c) for c in coords))


# --- Intersection engine ---
def as_multipolygon(value: GeometryInput) -> MultiPolygon:
    """Coerce a Polygon, MultiPolygon, GeoJSON object or raw coordinates"""
    if value is None:
        return MultiPolygon()
    if isinstance(value, MultiPolygon):
        return value
    if isinstance(value, Polygon):
        return MultiPolygon.of(value)
    if isinstance(value, dict):
        return MultiPolygon.from_geojson(value)
    if not value:
        return MultiPolygon()
    # Raw GeoJSON coordinates: rings of points (Polygon) or polygons of rings (MultiPolygon)
    if _coordinate_depth(value) >= 4:
        return MultiPolygon.from_coordinates(value)
    return MultiPolygon.of(Polygon.from_coordinates(value))


def _coordinate_depth(value) -> int:
    depth = 0
    while isinstance(value, (list, tuple)) and value:
        depth += 1
        value = value[0]
    return depth


def _ring_coords(ring: Ring) -> List[Tuple[float, float]]:
    return [p.as_lon_lat() for p in ring]


def _polygonal_parts(geom: BaseGeometry) -> List[ShapelyPolygon]:
    if geom is None or geom.is_empty:
        return []
    if geom.geom_type == 'Polygon':
        return [geom]
    if geom.geom_type in ('MultiPolygon', 'GeometryCollection'):
        parts: List[ShapelyPolygon] = []
        for sub in geom.geoms:
            parts.extend(_polygonal_parts(sub))
        return parts
    return []


def to_shape(multipolygon: MultiPolygon) -> Optional[BaseGeometry]:
    """Union of every polygon on one side, or None when nothing has area"""
    shapes = []
    for polygon in multipolygon:
        if len(polygon.exterior) < MIN_RING_POINTS:
            continue
        holes = [_ring_coords(h) for h in polygon.holes if len(h) >= MIN_RING_POINTS]
        shape = ShapelyPolygon(_ring_coords(polygon.exterior), holes)
        if not shape.is_valid:
            logger.debug("Repairing invalid polygon with %d vertices", len(polygon.exterior))
            shapes.extend(_polygonal_parts(make_valid(shape)))
        else:
            shapes.append(shape)
    shapes = [s for s in shapes if s.area > 0]
    if not shapes:
        return None
    return unary_union(shapes)


def from_shape(geom: Optional[BaseGeometry]) -> MultiPolygon:
    parts = [orient(p, sign=1.0) for p in _polygonal_parts(geom) if p.area > 0]
    parts.sort(key=lambda p: p.bounds)
    polygons = []
    for part in parts:
        exterior = tuple(GeoPoint.from_lon_lat(c) for c in part.exterior.coords)
        holes = tuple(
            tuple(GeoPoint.from_lon_lat(c) for c in interior.coords)
            for interior in part.interiors
        )
        polygons.append(Polygon(exterior=exterior, holes=holes))
    return MultiPolygon(polygons=tuple(polygons))


def _bounds_overlap(a: Tuple[float, ...], b: Tuple[float, ...]) -> bool:
    return not (a[0] > b[2] or b[0] > a[2] or a[1] > b[3] or b[1] > a[3])


def intersect(a: GeometryInput, b: GeometryInput) -> MultiPolygon:
    """
    Planar intersection of two polygon sets.

    A point is in the result when it lies in at least one polygon of `a`
    (exterior minus holes) and at least one polygon of `b`. Returns an empty
    MultiPolygon when the inputs do not overlap. Shapes that only touch along
    an edge or at a point yield no area and are dropped.
    """
    side_a = as_multipolygon(a)
    side_b = as_multipolygon(b)
    if side_a.is_empty or side_b.is_empty:
        return MultiPolygon()

    shape_a = to_shape(side_a)
    shape_b = to_shape(side_b)
    if shape_a is None or shape_b is None:
        return MultiPolygon()
    if not _bounds_overlap(shape_a.bounds, shape_b.bounds):
        return MultiPolygon()

    return from_shape(shape_a.intersection(shape_b))


# --- Centroid resolver ---
def vertex_centroid(value: GeometryInput) -> Optional[GeoPoint]:
    """
    Arithmetic mean of every vertex of every ring.

    This is an unweighted vertex average, not an area centroid: a densely
    sampled polygon pulls the point toward itself. The closing point of each
    ring is not counted twice.
    """
    total_lat = 0.0
    total_lon = 0.0
    count = 0
    for polygon in as_multipolygon(value):
        for ring in polygon.rings:
            points = list(ring)
            if len(points) > 1 and points[0] == points[-1]:
                points = points[:-1]
            for p in points:
                total_lat += p.latitude
                total_lon += p.longitude
                count += 1
    if count == 0:
        return None
    return GeoPoint(latitude=total_lat / count, longitude=total_lon / count)


def travel_distances(point: GeoPoint, location_a: Optional[Location], location_b: Optional[Location]) -> Dict[str, Optional[float]]:
    """Geodesic distance in km from each traveler to a point"""
    def _km(loc: Optional[Location]) -> Optional[float]:
        if loc is None:
            return None
        d = geodesic((loc.latitude, loc.longitude), (point.latitude, point.longitude))
        return round(d.kilometers, 2)

    return {
        'distance_from_a_km': _km(location_a),
        'distance_from_b_km': _km(location_b),
    }
