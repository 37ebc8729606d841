import asyncio

import pytest
from shapely.geometry import Point, shape

from meetzone.errors import ErrorKind, MissingCredentials, UpstreamUnavailable
from meetzone.models import Phase

from .helpers import (
    MV,
    OAKLAND,
    SF,
    FakeIsochroneService,
    FakeSearchService,
    FakeTravelTimeService,
    build_orchestrator,
    location,
    square_around,
    wait_for_phase,
)


def _run(orchestrator, *steps):
    async def _go():
        for step in steps:
            step(orchestrator)
        return await orchestrator.settle()
    return asyncio.run(_go())


def test_overlapping_isochrones_resolve_places(overlapping_boundaries, bay_area_places):
    travel = FakeTravelTimeService(seconds=3600)
    isochrones = FakeIsochroneService(overlapping_boundaries)
    search = FakeSearchService(bay_area_places)
    orchestrator = build_orchestrator(travel, isochrones, search, buffer_seconds=900)

    state = _run(orchestrator, lambda o: o.set_location_a(SF), lambda o: o.set_location_b(MV))

    assert state.phase == Phase.READY
    assert state.travel_time == 3600
    assert state.time_budget == 2700
    assert isochrones.calls_for(SF.point) == [2700]
    assert isochrones.calls_for(MV.point) == [2700]
    assert not state.intersection.is_empty
    assert {region for region, _c, _l in search.calls} == {state.intersection}
    assert [p.name for p in state.places] == ["Oakland", "Palo Alto", "Atherton"]
    assert shape(state.intersection.to_geojson()).contains(
        Point(state.focal_point.longitude, state.focal_point.latitude)
    )
    assert state.last_error is None


def test_disjoint_isochrones_are_ready_without_place_search():
    boundaries = {
        SF.point: square_around(SF.longitude, SF.latitude, 0.1),
        MV.point: square_around(MV.longitude, MV.latitude, 0.1),
    }
    search = FakeSearchService({'city': []})
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(boundaries), search)

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.READY
    assert state.intersection is not None and state.intersection.is_empty
    assert len(state.intersection) == 0
    assert state.places == ()
    assert state.focal_point is None
    assert search.calls == []
    assert state.last_error is None


def test_location_change_discards_in_flight_isochrones(overlapping_boundaries, bay_area_places):
    isochrones = FakeIsochroneService(overlapping_boundaries)
    orchestrator = build_orchestrator(FakeTravelTimeService(), isochrones, FakeSearchService(bay_area_places))
    seen = []

    async def _go():
        gate = asyncio.Event()
        isochrones.gates[SF.point] = gate
        orchestrator.set_locations(SF, MV)
        await wait_for_phase(orchestrator, Phase.AWAITING_ISOCHRONES)

        orchestrator.subscribe(seen.append)
        orchestrator.set_location_a(OAKLAND)
        gate.set()
        return await orchestrator.settle()

    state = asyncio.run(_go())

    assert state.phase == Phase.READY
    assert state.location_a == OAKLAND
    assert state.isochrone_a.origin == OAKLAND
    assert state.isochrone_b.origin == MV
    assert all(s.isochrone_a is None or s.isochrone_a.origin == OAKLAND for s in seen)
    assert all(s.location_a == OAKLAND for s in seen)


def test_unchanged_side_isochrone_is_reused(overlapping_boundaries, bay_area_places):
    isochrones = FakeIsochroneService(overlapping_boundaries)
    orchestrator = build_orchestrator(FakeTravelTimeService(seconds=3600), isochrones, FakeSearchService(bay_area_places))

    _run(orchestrator, lambda o: o.set_locations(SF, MV))
    state = _run(orchestrator, lambda o: o.set_location_a(OAKLAND))

    assert state.phase == Phase.READY
    assert isochrones.calls_for(MV.point) == [2700]
    assert isochrones.calls_for(OAKLAND.point) == [2700]


def test_changed_budget_refetches_both_sides(overlapping_boundaries, bay_area_places):
    travel = FakeTravelTimeService(seconds=3600)
    isochrones = FakeIsochroneService(overlapping_boundaries)
    orchestrator = build_orchestrator(travel, isochrones, FakeSearchService(bay_area_places))

    _run(orchestrator, lambda o: o.set_locations(SF, MV))
    travel.seconds = 1800
    _run(orchestrator, lambda o: o.set_location_a(OAKLAND))

    assert isochrones.calls_for(MV.point) == [2700, 1800]


def test_only_one_location_stays_idle():
    travel = FakeTravelTimeService()
    orchestrator = build_orchestrator(travel, FakeIsochroneService({}), FakeSearchService({}))

    state = _run(orchestrator, lambda o: o.set_location_a(SF))

    assert state.phase == Phase.IDLE
    assert state.location_a == SF
    assert travel.calls == []


def test_no_route_short_circuits_before_isochrones():
    isochrones = FakeIsochroneService({})
    orchestrator = build_orchestrator(FakeTravelTimeService(seconds=None), isochrones, FakeSearchService({}))

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.ERROR
    assert state.last_error.kind == ErrorKind.NO_ROUTE
    assert state.last_error.message == "no route"
    assert state.time_budget is None
    assert isochrones.calls == []


def test_travel_time_timeout_is_upstream_unavailable():
    travel = FakeTravelTimeService(delay=0.5)
    orchestrator = build_orchestrator(travel, FakeIsochroneService({}), FakeSearchService({}), timeout=0.02)

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.ERROR
    assert state.last_error.kind == ErrorKind.UPSTREAM_UNAVAILABLE


def test_missing_credentials_surface_as_their_own_kind():
    travel = FakeTravelTimeService(error=MissingCredentials("Google Maps API key not configured"))
    orchestrator = build_orchestrator(travel, FakeIsochroneService({}), FakeSearchService({}))

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.last_error.kind == ErrorKind.MISSING_CREDENTIALS


@pytest.mark.parametrize("failing, side", [(MV, "B"), (SF, "A")])
def test_isochrone_failure_names_the_failed_side(overlapping_boundaries, failing, side):
    overlapping_boundaries[failing.point] = UpstreamUnavailable("HTTP 503")
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService({}))

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.ERROR
    assert state.last_error.kind == ErrorKind.UPSTREAM_UNAVAILABLE
    assert state.last_error.message == "isochrone fetch failed"
    assert state.last_error.side == side
    assert state.travel_time == 3600


@pytest.mark.parametrize("boundary", [
    [(200.0, 37.0), (201.0, 37.0), (201.0, 38.0)],
    [("west", 37.0), (-122.0, 37.0), (-122.0, 38.0)],
    [(-122.0,), (-121.0, 37.0), (-121.0, 38.0)],
])
def test_invalid_isochrone_boundary_names_the_failed_side(overlapping_boundaries, boundary):
    overlapping_boundaries[MV.point] = boundary
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService({}))

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.ERROR
    assert state.last_error.kind == ErrorKind.UPSTREAM_UNAVAILABLE
    assert state.last_error.message == "isochrone fetch failed"
    assert state.last_error.side == "B"


def test_isochrone_failure_cancels_the_other_fetch(overlapping_boundaries):
    overlapping_boundaries[MV.point] = UpstreamUnavailable("HTTP 503")
    isochrones = FakeIsochroneService(overlapping_boundaries)
    orchestrator = build_orchestrator(FakeTravelTimeService(), isochrones, FakeSearchService({}))

    async def _go():
        isochrones.gates[SF.point] = asyncio.Event()  # never set
        orchestrator.set_locations(SF, MV)
        return await orchestrator.settle()

    state = asyncio.run(_go())

    assert state.last_error.side == "B"
    assert state.isochrone_a is None


def test_empty_boundary_means_no_reachable_area(overlapping_boundaries):
    overlapping_boundaries[SF.point] = []
    search = FakeSearchService({})
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), search)

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.READY
    assert state.isochrone_a.is_empty
    assert state.intersection.is_empty
    assert search.calls == []
    assert state.last_error is None


def test_place_failure_keeps_the_zone_geometry(overlapping_boundaries):
    search = FakeSearchService({c: UpstreamUnavailable("down") for c in ('city', 'town', 'village', 'populated place')})
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), search)

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.ERROR
    assert state.last_error.kind == ErrorKind.SEARCH_UNAVAILABLE
    assert not state.intersection.is_empty
    assert state.focal_point is not None
    assert state.isochrone_a is not None and state.isochrone_b is not None
    assert state.places == ()


def test_partial_place_failure_is_reported(overlapping_boundaries, bay_area_places):
    bay_area_places['town'] = UpstreamUnavailable("down")
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService(bay_area_places))

    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    assert state.phase == Phase.READY
    assert state.failed_categories == ('town',)
    assert [p.name for p in state.places] == ["Oakland", "Palo Alto"]


def test_phases_progress_in_order(overlapping_boundaries, bay_area_places):
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService(bay_area_places))
    phases = []
    orchestrator.subscribe(lambda s: phases.append(s.phase))

    _run(orchestrator, lambda o: o.set_locations(SF, MV))

    distinct = [p for i, p in enumerate(phases) if i == 0 or phases[i - 1] != p]
    assert distinct == [
        Phase.IDLE,
        Phase.AWAITING_TRAVEL_TIME,
        Phase.AWAITING_ISOCHRONES,
        Phase.AWAITING_INTERSECTION,
        Phase.AWAITING_PLACES,
        Phase.READY,
    ]


def test_select_place_and_reset(overlapping_boundaries, bay_area_places):
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService(bay_area_places))
    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))

    orchestrator.select_place(state.places[1])
    assert orchestrator.state.selected_place == state.places[1]

    with pytest.raises(ValueError):
        orchestrator.select_place(bay_area_places['populated place'][0])

    orchestrator.select_place(None)
    assert orchestrator.state.selected_place is None

    orchestrator.reset()
    assert orchestrator.state.phase == Phase.IDLE
    assert orchestrator.state.location_a is None
    assert orchestrator.state.intersection is None
    assert orchestrator.state.places == ()


def test_location_change_clears_selection_and_derived_state(overlapping_boundaries, bay_area_places):
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService(bay_area_places))
    state = _run(orchestrator, lambda o: o.set_locations(SF, MV))
    orchestrator.select_place(state.places[0])

    state = _run(orchestrator, lambda o: o.set_location_b(None))

    assert state.phase == Phase.IDLE
    assert state.location_a == SF
    assert state.selected_place is None
    assert state.travel_time is None
    assert state.intersection is None
    assert state.places == ()


def test_snapshot_serializes_to_plain_dict(overlapping_boundaries, bay_area_places):
    orchestrator = build_orchestrator(FakeTravelTimeService(), FakeIsochroneService(overlapping_boundaries), FakeSearchService(bay_area_places))
    state = _run(orchestrator, lambda o: o.set_locations(SF, location(37.39, -122.08, "Mountain View, CA")))

    payload = state.to_dict()

    assert payload['phase'] == 'ready'
    assert payload['intersection']['type'] == 'MultiPolygon'
    assert payload['travel_time_minutes'] == 60.0
    assert payload['places'][0]['country_code'] == 'US'
