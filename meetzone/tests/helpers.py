import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from meetzone.models import GeoPoint, Location, MultiPolygon, PlaceCandidate
from meetzone.orchestrator import MeetingZoneOrchestrator
from meetzone.place_resolver import PlaceResolver


def square(min_lon: float, min_lat: float, size: float) -> List[Tuple[float, float]]:
    """Open (unclosed) square boundary in (lon, lat) order"""
    return [
        (min_lon, min_lat),
        (min_lon + size, min_lat),
        (min_lon + size, min_lat + size),
        (min_lon, min_lat + size),
    ]


def square_around(lon: float, lat: float, half: float) -> List[Tuple[float, float]]:
    return square(lon - half, lat - half, 2 * half)


def location(lat: float, lng: float, name: str = "") -> Location:
    return Location(point=GeoPoint(latitude=lat, longitude=lng), name=name or f"{lat},{lng}")


def place(name: str, municipality: Optional[str], country: Optional[str], category: str,
          lat: float = 37.5, lng: float = -122.2) -> PlaceCandidate:
    return PlaceCandidate(
        name=name,
        municipality=municipality,
        country_code=country,
        position=GeoPoint(latitude=lat, longitude=lng),
        raw_address=f"{municipality}, {country}",
        category=category,
    )


class FakeTravelTimeService:
    def __init__(self, seconds: Optional[int] = 3600, error: Optional[Exception] = None, delay: float = 0.0):
        self.seconds = seconds
        self.error = error
        self.delay = delay
        self.calls: List[Tuple[GeoPoint, GeoPoint, str]] = []

    async def get_travel_time_async(self, origin: GeoPoint, destination: GeoPoint, mode: str = "driving") -> Optional[int]:
        self.calls.append((origin, destination, mode))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.seconds


class FakeIsochroneService:
    """
    Boundaries keyed by origin point. A value may be a list of (lon, lat)
    pairs or an exception to raise. `gates` holds asyncio.Events that must be
    set before the matching origin's response is delivered.
    """

    def __init__(self, boundaries: Dict[GeoPoint, object]):
        self.boundaries = boundaries
        self.gates: Dict[GeoPoint, asyncio.Event] = {}
        self.calls: List[Tuple[GeoPoint, int]] = []

    async def get_reachable_boundary_async(self, origin: GeoPoint, budget_seconds: int) -> List[Tuple[float, float]]:
        self.calls.append((origin, budget_seconds))
        gate = self.gates.get(origin)
        if gate is not None:
            await gate.wait()
        value = self.boundaries[origin]
        if isinstance(value, Exception):
            raise value
        return list(value)

    def calls_for(self, origin: GeoPoint) -> List[int]:
        return [budget for point, budget in self.calls if point == origin]


class FakeSearchService:
    """Results keyed by category; a value may be a list, an exception, or (delay, value)"""

    def __init__(self, results: Dict[str, object]):
        self.results = results
        self.calls: List[Tuple[MultiPolygon, str, int]] = []

    async def search_inside_geometry_async(self, region: MultiPolygon, category: str, limit: int = 100) -> List[PlaceCandidate]:
        self.calls.append((region, category, limit))
        value = self.results.get(category, [])
        if isinstance(value, tuple):
            delay, value = value
            await asyncio.sleep(delay)
        if isinstance(value, Exception):
            raise value
        return list(value)

    @property
    def categories_called(self) -> List[str]:
        return [category for _region, category, _limit in self.calls]


class FakeGoogleService(FakeTravelTimeService):
    """Travel time plus geocoding, sync and async, for the Flask tests"""

    def __init__(self, addresses: Optional[Dict[str, Location]] = None, **kwargs):
        super().__init__(**kwargs)
        self.addresses = addresses or {}

    def geocode_address(self, address: str) -> Optional[Location]:
        return self.addresses.get(address)

    def get_travel_time(self, origin: GeoPoint, destination: GeoPoint, mode: str = "driving", departure_time=None) -> Optional[int]:
        self.calls.append((origin, destination, mode))
        return self.seconds


class FakeAzureService(FakeIsochroneService, FakeSearchService):
    def __init__(self, boundaries: Dict[GeoPoint, object], results: Dict[str, object]):
        FakeIsochroneService.__init__(self, boundaries)
        self.results = results
        # FakeIsochroneService owns `calls`; searches are tracked separately
        self.search_calls: List[Tuple[MultiPolygon, str, int]] = []

    async def search_inside_geometry_async(self, region: MultiPolygon, category: str, limit: int = 100) -> List[PlaceCandidate]:
        self.search_calls.append((region, category, limit))
        return list(self.results.get(category, []))


async def wait_for_phase(orchestrator: MeetingZoneOrchestrator, phase, attempts: int = 200):
    for _ in range(attempts):
        if orchestrator.state.phase == phase:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"phase {phase} never reached; stuck at {orchestrator.state.phase}")


def build_orchestrator(travel, isochrones, search,
                       categories: Sequence[str] = ('city', 'town', 'village', 'populated place'),
                       buffer_seconds: int = 900, timeout: float = 5.0) -> MeetingZoneOrchestrator:
    resolver = PlaceResolver(search, categories=categories, result_cap=100, timeout=timeout)
    return MeetingZoneOrchestrator(travel, isochrones, resolver, buffer_seconds=buffer_seconds, timeout=timeout)


# San Francisco, Mountain View, Oakland
SF = location(37.77, -122.42, "San Francisco, CA")
MV = location(37.39, -122.08, "Mountain View, CA")
OAKLAND = location(37.80, -122.27, "Oakland, CA")
