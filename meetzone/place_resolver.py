import asyncio
import logging
from typing import Iterable, List, Optional, Sequence

from .config import DEFAULT_PLACE_CATEGORIES, DEFAULT_PLACE_RESULT_CAP, DEFAULT_REQUEST_TIMEOUT
from .errors import MissingCredentials, SearchUnavailable, UpstreamUnavailable
from .models import MultiPolygon, PlaceCandidate, PlaceResolution

logger = logging.getLogger(__name__)

# Errors that empty a single category instead of failing the resolution
CATEGORY_FAILURES = (
    UpstreamUnavailable,
    asyncio.TimeoutError,
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
)


def merge_category_results(categories: Sequence[str], results: Sequence[Iterable[PlaceCandidate]]) -> List[PlaceCandidate]:
    """Concatenate per-category results in category declaration order"""
    merged: List[PlaceCandidate] = []
    for _category, places in zip(categories, results):
        merged.extend(places)
    return merged


def deduplicate_places(places: Iterable[PlaceCandidate]) -> List[PlaceCandidate]:
    """Keep the first place seen for each (municipality, country_code) key"""
    seen = set()
    unique: List[PlaceCandidate] = []
    for place in places:
        key = place.identity_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(place)
    return unique


class PlaceResolver:
    """Finds the populated places inside a meeting zone"""

    def __init__(
        self,
        search_service,
        categories: Sequence[str] = DEFAULT_PLACE_CATEGORIES,
        result_cap: int = DEFAULT_PLACE_RESULT_CAP,
        timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.search_service = search_service
        self.categories = tuple(categories)
        self.result_cap = result_cap
        self.timeout = timeout

    async def _search(self, region: MultiPolygon, category: str) -> List[PlaceCandidate]:
        return await asyncio.wait_for(
            self.search_service.search_inside_geometry_async(region, category, self.result_cap),
            timeout=self.timeout,
        )

    async def resolve(self, region: MultiPolygon) -> PlaceResolution:
        """
        Search every category inside `region` concurrently and merge.

        A category that times out, is unreachable or returns malformed data
        contributes nothing and is listed in `failed_categories`. Missing
        credentials, or every category failing, raises instead.
        """
        if region.is_empty or not self.categories:
            return PlaceResolution()

        tasks = [self._search(region, category) for category in self.categories]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        per_category: List[List[PlaceCandidate]] = []
        failed: List[str] = []
        for category, result in zip(self.categories, results):
            if isinstance(result, MissingCredentials):
                raise result
            if isinstance(result, CATEGORY_FAILURES):
                logger.warning("Place search for category '%s' failed: %r", category, result)
                failed.append(category)
                per_category.append([])
            elif isinstance(result, BaseException):
                raise result
            else:
                logger.info("Place search for category '%s' returned %d results", category, len(result))
                per_category.append(list(result))

        if len(failed) == len(self.categories):
            raise SearchUnavailable(f"Place search failed for every category: {', '.join(failed)}")

        places = deduplicate_places(merge_category_results(self.categories, per_category))
        return PlaceResolution(places=tuple(places), failed_categories=tuple(failed))
