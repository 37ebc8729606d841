from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import ErrorKind


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    @classmethod
    def from_lon_lat(cls, pair: Sequence[float]) -> "GeoPoint":
        return cls(latitude=float(pair[1]), longitude=float(pair[0]))

    @classmethod
    def from_dict(cls, data: Dict) -> "GeoPoint":
        """Accepts the {lat, lng} shape used by the API payloads"""
        return cls(latitude=float(data['lat']), longitude=float(data['lng']))

    def as_lon_lat(self) -> Tuple[float, float]:
        return (self.longitude, self.latitude)

    def to_dict(self) -> Dict[str, float]:
        return {'lat': self.latitude, 'lng': self.longitude}


@dataclass(frozen=True)
class Location:
    """A traveler's chosen origin"""

    point: GeoPoint
    name: str = ""

    @property
    def latitude(self) -> float:
        return self.point.latitude

    @property
    def longitude(self) -> float:
        return self.point.longitude

    @classmethod
    def from_dict(cls, data: Dict) -> "Location":
        return cls(point=GeoPoint.from_dict(data), name=str(data.get('name') or ''))

    def to_dict(self) -> Dict[str, Any]:
        return {**self.point.to_dict(), 'name': self.name}


# A closed sequence of points, first == last.
Ring = Tuple[GeoPoint, ...]


def ring_from_coordinates(coords: Sequence[Sequence[float]]) -> Ring:
    return tuple(GeoPoint.from_lon_lat(pair) for pair in coords)


def ring_to_coordinates(ring: Ring) -> List[List[float]]:
    return [[p.longitude, p.latitude] for p in ring]


@dataclass(frozen=True)
class Polygon:
    exterior: Ring
    holes: Tuple[Ring, ...] = ()

    @property
    def rings(self) -> Tuple[Ring, ...]:
        return (self.exterior,) + tuple(self.holes)

    @classmethod
    def from_coordinates(cls, coords: Sequence[Sequence[Sequence[float]]]) -> "Polygon":
        """Build from GeoJSON Polygon coordinates: [exterior, hole, hole, ...]"""
        if not coords:
            return cls(exterior=())
        rings = [ring_from_coordinates(r) for r in coords]
        return cls(exterior=rings[0], holes=tuple(rings[1:]))

    def to_coordinates(self) -> List[List[List[float]]]:
        if not self.exterior:
            return []
        return [ring_to_coordinates(r) for r in self.rings]


@dataclass(frozen=True)
class MultiPolygon:
    polygons: Tuple[Polygon, ...] = ()

    def __len__(self) -> int:
        return len(self.polygons)

    def __iter__(self) -> Iterator[Polygon]:
        return iter(self.polygons)

    @property
    def is_empty(self) -> bool:
        return not any(p.exterior for p in self.polygons)

    @classmethod
    def of(cls, *polygons: Polygon) -> "MultiPolygon":
        return cls(polygons=tuple(polygons))

    @classmethod
    def from_coordinates(cls, coords: Sequence) -> "MultiPolygon":
        return cls(polygons=tuple(Polygon.from_coordinates(c) for c in coords))

    def to_coordinates(self) -> List[List[List[List[float]]]]:
        return [p.to_coordinates() for p in self.polygons if p.exterior]

    @classmethod
    def from_geojson(cls, obj: Optional[Dict]) -> "MultiPolygon":
        """
        Accepts a GeoJSON Polygon, MultiPolygon, Feature or FeatureCollection.
        Other geometry types contribute nothing.
        """
        if not obj:
            return cls()
        kind = obj.get('type')
        if kind == 'FeatureCollection':
            polygons: List[Polygon] = []
            for feature in obj.get('features', []):
                polygons.extend(cls.from_geojson(feature).polygons)
            return cls(polygons=tuple(polygons))
        if kind == 'Feature':
            return cls.from_geojson(obj.get('geometry'))
        if kind == 'Polygon':
            return cls.of(Polygon.from_coordinates(obj.get('coordinates', [])))
        if kind == 'MultiPolygon':
            return cls.from_coordinates(obj.get('coordinates', []))
        return cls()

    def to_geojson(self) -> Dict[str, Any]:
        return {'type': 'MultiPolygon', 'coordinates': self.to_coordinates()}


@dataclass(frozen=True)
class Isochrone:
    """Reachable area for one Location at one time budget"""

    origin: Location
    budget_seconds: int
    area: MultiPolygon = field(default_factory=MultiPolygon)

    @property
    def is_empty(self) -> bool:
        return self.area.is_empty

    def to_dict(self) -> Dict[str, Any]:
        return {
            'origin': self.origin.to_dict(),
            'budget_seconds': self.budget_seconds,
            'geometry': self.area.to_geojson(),
        }


# Overlap of two isochrones; empty when they do not meet.
IntersectionResult = MultiPolygon


@dataclass(frozen=True)
class PlaceCandidate:
    name: str
    municipality: Optional[str]
    country_code: Optional[str]
    position: GeoPoint
    raw_address: str = ""
    category: str = ""

    @property
    def identity_key(self) -> Tuple[Optional[str], Optional[str]]:
        return (self.municipality, self.country_code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'municipality': self.municipality,
            'country_code': self.country_code,
            'position': self.position.to_dict(),
            'raw_address': self.raw_address,
            'category': self.category,
        }


@dataclass(frozen=True)
class PlaceResolution:
    places: Tuple[PlaceCandidate, ...] = ()
    failed_categories: Tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return not self.failed_categories


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_TRAVEL_TIME = "awaiting_travel_time"
    AWAITING_ISOCHRONES = "awaiting_isochrones"
    AWAITING_INTERSECTION = "awaiting_intersection"
    AWAITING_PLACES = "awaiting_places"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class ZoneError:
    kind: ErrorKind
    message: str
    side: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'message': self.message, 'side': self.side}


@dataclass(frozen=True)
class MeetingZoneState:
    """Read-only snapshot of an orchestrator's state"""

    location_a: Optional[Location] = None
    location_b: Optional[Location] = None
    travel_time: Optional[int] = None
    time_budget: Optional[int] = None
    isochrone_a: Optional[Isochrone] = None
    isochrone_b: Optional[Isochrone] = None
    intersection: Optional[IntersectionResult] = None
    places: Tuple[PlaceCandidate, ...] = ()
    selected_place: Optional[PlaceCandidate] = None
    focal_point: Optional[GeoPoint] = None
    phase: Phase = Phase.IDLE
    last_error: Optional[ZoneError] = None
    failed_categories: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'location_a': self.location_a.to_dict() if self.location_a else None,
            'location_b': self.location_b.to_dict() if self.location_b else None,
            'travel_time_seconds': self.travel_time,
            'travel_time_minutes': round(self.travel_time / 60, 1) if self.travel_time is not None else None,
            'time_budget_seconds': self.time_budget,
            'isochrone_a': self.isochrone_a.to_dict() if self.isochrone_a else None,
            'isochrone_b': self.isochrone_b.to_dict() if self.isochrone_b else None,
            'intersection': self.intersection.to_geojson() if self.intersection is not None else None,
            'places': [p.to_dict() for p in self.places],
            'selected_place': self.selected_place.to_dict() if self.selected_place else None,
            'focal_point': self.focal_point.to_dict() if self.focal_point else None,
            'last_error': self.last_error.to_dict() if self.last_error else None,
            'failed_categories': list(self.failed_categories),
        }
