import asyncio
import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from .budget import DEFAULT_BUFFER_SECONDS, compute_time_budget
from .config import DEFAULT_REQUEST_TIMEOUT, DEFAULT_TRAVEL_MODE
from .errors import (
    EmptyBoundary,
    ErrorKind,
    MeetingZoneError,
    NoRoute,
    StaleResponse,
    UpstreamUnavailable,
)
from .geometry import intersect, normalize_boundary, vertex_centroid
from .models import (
    Isochrone,
    Location,
    MeetingZoneState,
    MultiPolygon,
    Phase,
    PlaceCandidate,
    ZoneError,
)
from .place_resolver import PlaceResolver

logger = logging.getLogger(__name__)

SIDE_A = "A"
SIDE_B = "B"

Listener = Callable[[MeetingZoneState], None]


class MeetingZoneOrchestrator:
    """
    Owns one MeetingZoneState and runs the discovery pipeline:

        travel time -> budget -> isochrone A || isochrone B -> intersection
        -> focal point + places

    Every input change bumps a generation counter. A pipeline run only
    writes to state while its generation is current; anything that
    completes for an older generation is dropped.

    Location setters schedule work on the running event loop, so they must
    be called from inside a coroutine. Use `settle()` to wait for the
    current run.
    """

    def __init__(
        self,
        travel_time_service,
        isochrone_service,
        place_resolver: PlaceResolver,
        buffer_seconds: int = DEFAULT_BUFFER_SECONDS,
        timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        travel_mode: str = DEFAULT_TRAVEL_MODE,
    ):
        self.travel_time_service = travel_time_service
        self.isochrone_service = isochrone_service
        self.place_resolver = place_resolver
        self.buffer_seconds = buffer_seconds
        self.timeout = timeout
        self.travel_mode = travel_mode

        self._state = MeetingZoneState()
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._stale_tasks: Set[asyncio.Task] = set()
        self._isochrone_cache: Dict[str, Isochrone] = {}
        self._listeners: List[Listener] = []

    # --- Read side ---
    @property
    def state(self) -> MeetingZoneState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Call `callback` with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def _unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _unsubscribe

    def _publish(self, state: MeetingZoneState):
        self._state = state
        for callback in list(self._listeners):
            callback(state)

    def _update(self, **changes):
        self._publish(replace(self._state, **changes))

    # --- Imperative operations ---
    def set_location_a(self, location: Optional[Location]):
        self.set_locations(location, self._state.location_b)

    def set_location_b(self, location: Optional[Location]):
        self.set_locations(self._state.location_a, location)

    def set_locations(self, location_a: Optional[Location], location_b: Optional[Location]):
        """Replace both locations at once; everything derived from them is invalidated"""
        self._invalidate()
        self._publish(MeetingZoneState(location_a=location_a, location_b=location_b, phase=Phase.IDLE))
        if location_a is not None and location_b is not None:
            self._start()

    def select_place(self, place: Optional[PlaceCandidate]):
        if place is not None and place not in self._state.places:
            raise ValueError(f"{place.name!r} is not one of the current candidate places")
        self._update(selected_place=place)

    def reset(self):
        self._invalidate()
        self._isochrone_cache.clear()
        self._publish(MeetingZoneState())

    async def settle(self) -> MeetingZoneState:
        """Wait for the current pipeline run (and cancelled stale runs) to finish"""
        while True:
            pending = [t for t in self._stale_tasks | ({self._task} if self._task else set()) if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        self._stale_tasks = {t for t in self._stale_tasks if not t.done()}
        return self._state

    # --- Pipeline ---
    def _invalidate(self):
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
            self._stale_tasks.add(self._task)
        self._task = None

    def _start(self):
        loop = asyncio.get_running_loop()
        generation = self._generation
        self._update(phase=Phase.AWAITING_TRAVEL_TIME)
        self._task = loop.create_task(self._run(generation))

    def _ensure_current(self, generation: int):
        if generation != self._generation:
            raise StaleResponse(f"generation {generation} superseded by {self._generation}")

    def _fail(self, error: MeetingZoneError):
        logger.warning("Meeting-zone pipeline failed (%s, side=%s): %s", error.kind.value, error.side, error.message)
        self._update(
            phase=Phase.ERROR,
            last_error=ZoneError(kind=error.kind, message=error.message, side=error.side),
        )

    async def _run(self, generation: int):
        try:
            await self._pipeline(generation)
        except StaleResponse as e:
            logger.debug("Discarding stale pipeline result: %s", e)
        except MeetingZoneError as e:
            if generation == self._generation:
                self._fail(e)
        except Exception as e:
            logger.error("Unexpected error in meeting-zone pipeline: %s", e, exc_info=True)
            if generation == self._generation:
                self._fail(UpstreamUnavailable(f"Unexpected error: {e}"))

    async def _pipeline(self, generation: int):
        location_a = self._state.location_a
        location_b = self._state.location_b

        travel_time = await self._fetch_travel_time(location_a, location_b)
        self._ensure_current(generation)
        if travel_time is None:
            raise NoRoute("no route")
        budget = compute_time_budget(travel_time, self.buffer_seconds)
        logger.info("Travel time %ss -> isochrone budget %ss per traveler", travel_time, budget)
        self._update(travel_time=travel_time, time_budget=budget, phase=Phase.AWAITING_ISOCHRONES)

        isochrone_a, isochrone_b = await self._fetch_isochrones(location_a, location_b, budget)
        self._ensure_current(generation)
        self._isochrone_cache[SIDE_A] = isochrone_a
        self._isochrone_cache[SIDE_B] = isochrone_b
        self._update(isochrone_a=isochrone_a, isochrone_b=isochrone_b, phase=Phase.AWAITING_INTERSECTION)

        intersection = intersect(isochrone_a.area, isochrone_b.area)
        if intersection.is_empty:
            logger.info("Isochrones do not overlap; no meeting zone")
            self._update(intersection=intersection, places=(), focal_point=None, phase=Phase.READY)
            return
        focal_point = vertex_centroid(intersection)
        logger.info("Meeting zone has %d polygon(s), focal point %s", len(intersection), focal_point)
        self._update(intersection=intersection, focal_point=focal_point, phase=Phase.AWAITING_PLACES)

        resolution = await self.place_resolver.resolve(intersection)
        self._ensure_current(generation)
        logger.info("Resolved %d place(s); failed categories: %s", len(resolution.places), list(resolution.failed_categories))
        self._update(
            places=resolution.places,
            failed_categories=resolution.failed_categories,
            phase=Phase.READY,
        )

    async def _fetch_travel_time(self, location_a: Location, location_b: Location) -> Optional[int]:
        try:
            return await asyncio.wait_for(
                self.travel_time_service.get_travel_time_async(location_a.point, location_b.point, self.travel_mode),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("travel time lookup timed out") from e

    async def _fetch_isochrone(self, side: str, location: Location, budget: int) -> Isochrone:
        cached = self._isochrone_cache.get(side)
        if cached is not None and cached.origin == location and cached.budget_seconds == budget:
            logger.info("Reusing isochrone %s for %r at %ss", side, location.name, budget)
            return cached

        try:
            boundary = await asyncio.wait_for(
                self.isochrone_service.get_reachable_boundary_async(location.point, budget),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("isochrone fetch failed", side=side) from e
        except MeetingZoneError as e:
            logger.warning("Isochrone %s fetch error: %s", side, e.message)
            if e.kind == ErrorKind.MISSING_CREDENTIALS:
                e.side = side
                raise
            raise UpstreamUnavailable("isochrone fetch failed", side=side) from e
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Isochrone %s response malformed: %r", side, e)
            raise UpstreamUnavailable("isochrone fetch failed", side=side) from e

        try:
            area = MultiPolygon.of(normalize_boundary(boundary))
        except EmptyBoundary:
            logger.info("No reachable area around %r within %ss", location.name, budget)
            area = MultiPolygon()
        except (ValueError, TypeError, IndexError) as e:
            logger.warning("Isochrone %s boundary invalid: %r", side, e)
            raise UpstreamUnavailable("isochrone fetch failed", side=side) from e
        return Isochrone(origin=location, budget_seconds=budget, area=area)

    async def _fetch_isochrones(self, location_a: Location, location_b: Location, budget: int) -> Tuple[Isochrone, Isochrone]:
        """Fetch both sides concurrently; the first failure wins and names its side"""
        task_a = asyncio.ensure_future(self._fetch_isochrone(SIDE_A, location_a, budget))
        task_b = asyncio.ensure_future(self._fetch_isochrone(SIDE_B, location_b, budget))
        tasks = (task_a, task_b)
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failures = [t.exception() for t in tasks if t in done and t.exception() is not None]
        if failures:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise failures[0]
        return task_a.result(), task_b.result()
