import asyncio
import concurrent.futures
import logging
from typing import Dict, List, Optional, Tuple

import googlemaps
import requests
from googlemaps.exceptions import ApiError, Timeout, TransportError

from .errors import MissingCredentials, UpstreamUnavailable
from .geometry import parse_reachable_range
from .models import GeoPoint, Location, MultiPolygon, PlaceCandidate

logger = logging.getLogger(__name__)


# --- Module-level constants ---
AZURE_MAPS_BASE_URL = "https://atlas.microsoft.com"
AZURE_MAPS_API_VERSION = "1.0"
AZURE_MAX_SEARCH_POLYGONS = 50  # search-inside-geometry limit per request
NO_ROUTE_STATUSES = ('NOT_FOUND', 'ZERO_RESULTS')
DENIED_STATUSES = ('REQUEST_DENIED',)
EXECUTOR_WORKERS = 10


def _fmt(point: GeoPoint) -> str:
    return f"{point.latitude},{point.longitude}"


class GoogleMapsService:
    """Geocoding and travel-time lookups through the Google Maps APIs"""

    def __init__(self, api_key: Optional[str], timeout: float = 20.0, client=None):
        if client is None:
            if not api_key:
                raise MissingCredentials("Valid Google Maps API key is required")
            client = googlemaps.Client(key=api_key, timeout=timeout)
        self.client = client
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=EXECUTOR_WORKERS)

    def cleanup(self):
        """Clean up resources"""
        if hasattr(self, 'executor'):
            self.executor.shutdown(wait=True)

    @staticmethod
    def _translate(exc: Exception, what: str) -> Exception:
        if isinstance(exc, ApiError) and exc.status in DENIED_STATUSES:
            return MissingCredentials(f"Google Maps rejected the API key for {what}: {exc.message or exc.status}")
        return UpstreamUnavailable(f"Google Maps {what} failed: {exc}")

    def geocode_address(self, address: str) -> Optional[Location]:
        """
        Geocode an address using Google Maps Geocoding API
        Returns a Location named after the formatted address, or None
        """
        try:
            result = self.client.geocode(address)
        except ApiError as e:
            if e.status in NO_ROUTE_STATUSES:
                return None
            raise self._translate(e, "geocoding") from e
        except (TransportError, Timeout) as e:
            raise self._translate(e, "geocoding") from e

        if not result:
            return None
        top = result[0]
        loc = top['geometry']['location']
        return Location(
            point=GeoPoint(latitude=loc['lat'], longitude=loc['lng']),
            name=top.get('formatted_address') or address,
        )

    def get_travel_time(self, origin: GeoPoint, destination: GeoPoint, mode: str = "driving", departure_time=None) -> Optional[int]:
        """
        Get travel time between two points using Google Maps Directions API
        Returns time in seconds, or None when there is no route
        """
        try:
            directions_result = self.client.directions(
                origin=_fmt(origin),
                destination=_fmt(destination),
                mode=mode,
                departure_time=departure_time,
                alternatives=False
            )
        except ApiError as e:
            if e.status in NO_ROUTE_STATUSES:
                logger.info("No %s route between %s and %s (%s)", mode, _fmt(origin), _fmt(destination), e.status)
                return None
            raise self._translate(e, "directions") from e
        except (TransportError, Timeout) as e:
            raise self._translate(e, "directions") from e

        if not directions_result:
            return None
        legs = directions_result[0].get('legs') or []
        if not legs or 'duration' not in legs[0]:
            return None
        return legs[0]['duration']['value']

    # Async wrappers for the pipeline
    async def geocode_address_async(self, address: str) -> Optional[Location]:
        """Async wrapper for geocode_address"""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self.executor, self.geocode_address, address)

    async def get_travel_time_async(self, origin: GeoPoint, destination: GeoPoint, mode: str = "driving") -> Optional[int]:
        """Async wrapper for get_travel_time"""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self.executor, self.get_travel_time, origin, destination, mode)


def region_to_feature_collection(region: MultiPolygon) -> Dict:
    """GeoJSON body for search-inside-geometry, one Feature per polygon"""
    polygons = region.to_coordinates()
    if len(polygons) > AZURE_MAX_SEARCH_POLYGONS:
        logger.warning(
            "Meeting zone has %d polygons; searching only the first %d",
            len(polygons), AZURE_MAX_SEARCH_POLYGONS,
        )
    features = []
    for coords in polygons[:AZURE_MAX_SEARCH_POLYGONS]:
        features.append({
            'type': 'Feature',
            'geometry': {'type': 'Polygon', 'coordinates': coords},
            'properties': {}
        })
    return {'type': 'FeatureCollection', 'features': features}


def _parse_search_item(item: Dict, category: str) -> Optional[PlaceCandidate]:
    """One search result as a PlaceCandidate, or None when it has no position"""
    address = item.get('address') or {}
    position = item.get('position') or {}
    if 'lat' not in position or 'lon' not in position:
        return None
    municipality = address.get('municipality')
    name = (item.get('poi') or {}).get('name') or municipality or address.get('freeformAddress', '')
    return PlaceCandidate(
        name=name,
        municipality=municipality,
        country_code=address.get('countryCode'),
        position=GeoPoint(latitude=float(position['lat']), longitude=float(position['lon'])),
        raw_address=address.get('freeformAddress', ''),
        category=category,
    )


def parse_search_results(payload: Dict, category: str) -> List[PlaceCandidate]:
    """
    Convert a search response into PlaceCandidates.

    Results without a position are skipped, as are malformed ones. Raises
    ValueError when the payload has no result list, or when it has results
    and every one of them is malformed.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get('results'), list):
        raise ValueError(f"Malformed search response for category '{category}'")

    places: List[PlaceCandidate] = []
    malformed = 0
    for item in payload['results']:
        try:
            place = _parse_search_item(item, category)
        except (AttributeError, TypeError, ValueError) as e:
            malformed += 1
            logger.warning("Skipping malformed '%s' search result: %r", category, e)
            continue
        if place is None:
            logger.debug("Skipping search result without position: %s", item.get('id'))
            continue
        places.append(place)
    if malformed and malformed == len(payload['results']):
        raise ValueError(f"Every search result for category '{category}' was malformed")
    return places


class AzureMapsService:
    """Reachable-range (isochrone) and place search through the Azure Maps REST APIs"""

    def __init__(self, subscription_key: Optional[str], timeout: float = 20.0, session: Optional[requests.Session] = None):
        if not subscription_key:
            raise MissingCredentials("Azure Maps subscription key missing")
        self.subscription_key = subscription_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=EXECUTOR_WORKERS)

    def cleanup(self):
        """Clean up resources"""
        if hasattr(self, 'executor'):
            self.executor.shutdown(wait=True)
        self.session.close()

    def _request(self, method: str, path: str, params: Dict, what: str, body: Optional[Dict] = None) -> Dict:
        params = {'api-version': AZURE_MAPS_API_VERSION, 'subscription-key': self.subscription_key, **params}
        try:
            resp = self.session.request(method, f"{AZURE_MAPS_BASE_URL}{path}", params=params, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Azure Maps {what} failed: {e}") from e
        if resp.status_code in (401, 403):
            raise MissingCredentials(f"Azure Maps rejected the subscription key for {what}")
        if resp.status_code >= 400:
            raise UpstreamUnavailable(f"Azure Maps {what} returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise ValueError(f"Azure Maps {what} returned invalid JSON") from e

    def get_reachable_boundary(self, origin: GeoPoint, budget_seconds: int) -> List[Tuple[float, float]]:
        """
        Get the reachable-range boundary around a point for a time budget.
        Returns (lon, lat) pairs; empty when there is no reachable range
        """
        payload = self._request(
            'GET', '/route/range/json',
            {'query': _fmt(origin), 'timeBudgetInSec': int(budget_seconds)},
            "route range",
        )
        return parse_reachable_range(payload)

    def search_inside_geometry(self, region: MultiPolygon, category: str, limit: int = 100) -> List[PlaceCandidate]:
        """Search for places matching a category inside a region"""
        if region.is_empty:
            return []
        payload = self._request(
            'POST', '/search/geometry/json',
            {'query': category, 'limit': int(limit)},
            f"search '{category}'",
            body={'geometry': region_to_feature_collection(region)},
        )
        return parse_search_results(payload, category)

    # Async wrappers for the pipeline
    async def get_reachable_boundary_async(self, origin: GeoPoint, budget_seconds: int) -> List[Tuple[float, float]]:
        """Async wrapper for get_reachable_boundary"""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self.executor, self.get_reachable_boundary, origin, budget_seconds)

    async def search_inside_geometry_async(self, region: MultiPolygon, category: str, limit: int = 100) -> List[PlaceCandidate]:
        """Async wrapper for search_inside_geometry"""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self.executor, self.search_inside_geometry, region, category, limit)
