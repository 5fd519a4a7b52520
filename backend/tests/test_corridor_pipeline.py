"""Tests for corridor_pipeline.py.

Resolvers are in-memory fakes keyed by latitude; no network access occurs.
"""

import asyncio

import pytest
from googlemaps import exceptions as gmaps_exceptions

from corridor_pipeline import CorridorPipeline
from errors import InvalidInput, RouteUnavailable
from locality_resolver import LocalityResolver, ReverseGeocodeResolver
from models import Coordinate, CorridorStatus, LocalityRecord, Maneuver

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


def _town(name, place_id=None):
    return LocalityRecord(id=place_id, name=name, kind="town")


def _route(*lats):
    return [Coordinate(latitude=lat, longitude=19.0) for lat in lats]


class _FakeResolver(LocalityResolver):
    """Returns canned results per latitude, optionally waiting on a gate."""

    source = "fake"

    def __init__(self, by_lat, gates=None, delays=None):
        super().__init__()
        self._by_lat = by_lat
        self._gates = gates or {}
        self._delays = delays or {}
        self.calls = []

    async def resolve(self, point):
        self.calls.append(point.latitude)
        gate = self._gates.get(point.latitude)
        if gate is not None:
            await gate.wait()
        delay = self._delays.get(point.latitude)
        if delay:
            await asyncio.sleep(delay)
        return self._by_lat.get(point.latitude, [])


class _MockMapsClient:
    """Reverse geocoder that fails for selected latitudes."""

    def __init__(self, names, failing=()):
        self._names = names
        self._failing = set(failing)

    def reverse_geocode(self, latlng, language=None):
        lat = latlng[0]
        if lat in self._failing:
            raise gmaps_exceptions.TransportError("connection reset")
        name = self._names.get(lat)
        if name is None:
            return []
        return [
            {
                "place_id": f"id-{name}",
                "types": ["locality", "political"],
                "address_components": [
                    {"long_name": name, "types": ["locality", "political"]}
                ],
                "geometry": {"location": {"lat": lat, "lng": 19.0}},
            }
        ]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_pipeline_starts_idle():
    pipeline = CorridorPipeline(_FakeResolver({}))
    assert pipeline.status == CorridorStatus.IDLE
    assert pipeline.result.localities == []


def test_pipeline_rejects_invalid_parameters():
    with pytest.raises(InvalidInput):
        CorridorPipeline(_FakeResolver({}), target_count=0)
    with pytest.raises(InvalidInput):
        CorridorPipeline(_FakeResolver({}), concurrency=0)


# ---------------------------------------------------------------------------
# Resolution runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_route_computed_ready_in_sampling_order():
    """[A, B, C] -> [Town1], [], [Town2, Town1] yields [Town1, Town2]."""
    town1, town2 = _town("Gliwice"), _town("Zabrze")
    resolver = _FakeResolver({1.0: [town1], 2.0: [], 3.0: [town2, town1]})
    seen = []
    pipeline = CorridorPipeline(
        resolver, target_count=3, on_change=lambda r: seen.append(r.status)
    )

    result = await pipeline.route_computed(_route(1.0, 2.0, 3.0))

    assert result.status == CorridorStatus.READY
    assert result.localities == [town1, town2]
    assert resolver.calls == [1.0, 2.0, 3.0]
    assert seen == [CorridorStatus.LOADING, CorridorStatus.READY]


@pytest.mark.asyncio
async def test_route_computed_accepts_maneuvers():
    resolver = _FakeResolver({5.0: [_town("Toszek")]})
    pipeline = CorridorPipeline(resolver)
    maneuvers = [Maneuver(end_point=c) for c in _route(4.0, 5.0)]

    result = await pipeline.route_computed(maneuvers)

    assert [r.name for r in result.localities] == ["Toszek"]


@pytest.mark.asyncio
async def test_route_computed_samples_at_most_target_plus_endpoint():
    resolver = _FakeResolver({})
    pipeline = CorridorPipeline(resolver, target_count=10)
    await pipeline.route_computed(_route(*[float(i) for i in range(25)]))
    assert resolver.calls == [float(i) for i in range(0, 25, 2)]


@pytest.mark.asyncio
async def test_route_computed_empty_when_nothing_found():
    pipeline = CorridorPipeline(_FakeResolver({}))
    result = await pipeline.route_computed(_route(1.0, 2.0))
    assert result.status == CorridorStatus.EMPTY
    assert result.localities == []


@pytest.mark.asyncio
async def test_route_computed_empty_route_is_empty_not_failed():
    pipeline = CorridorPipeline(_FakeResolver({}))
    result = await pipeline.route_computed([])
    assert result.status == CorridorStatus.EMPTY


@pytest.mark.asyncio
async def test_failed_lookup_behaves_like_no_locality():
    names = {1.0: "Gliwice", 2.0: "Pyskowice", 3.0: "Opole"}
    failing = ReverseGeocodeResolver(_MockMapsClient(names, failing={2.0}))
    missing = ReverseGeocodeResolver(
        _MockMapsClient({1.0: "Gliwice", 3.0: "Opole"})
    )

    with_failure = await CorridorPipeline(failing).route_computed(
        _route(1.0, 2.0, 3.0)
    )
    with_gap = await CorridorPipeline(missing).route_computed(
        _route(1.0, 2.0, 3.0)
    )

    assert with_failure.status == CorridorStatus.READY
    assert with_failure.localities == with_gap.localities
    assert [r.name for r in with_failure.localities] == ["Gliwice", "Opole"]


@pytest.mark.asyncio
async def test_all_lookups_failing_degrades_to_empty():
    resolver = ReverseGeocodeResolver(
        _MockMapsClient({}, failing={1.0, 2.0, 3.0})
    )
    result = await CorridorPipeline(resolver).route_computed(_route(1.0, 2.0, 3.0))
    assert result.status == CorridorStatus.EMPTY


@pytest.mark.asyncio
async def test_concurrent_resolution_keeps_sampling_order():
    """Later points finish first; output must still follow the route."""
    town_a, town_b, town_c = _town("A"), _town("B"), _town("C")
    resolver = _FakeResolver(
        {1.0: [town_a], 2.0: [town_b, town_a], 3.0: [town_c, town_b]},
        delays={1.0: 0.05, 2.0: 0.02, 3.0: 0.0},
    )
    pipeline = CorridorPipeline(resolver, target_count=3, concurrency=4)

    result = await pipeline.route_computed(_route(1.0, 2.0, 3.0))

    assert result.localities == [town_a, town_b, town_c]


# ---------------------------------------------------------------------------
# Supersession, failure, and reset
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_superseded_run_never_overwrites_newer_result():
    gate = asyncio.Event()
    resolver = _FakeResolver(
        {1.0: [_town("Old1")], 2.0: [_town("Old2")], 10.0: [_town("New")]},
        gates={1.0: gate},
    )
    pipeline = CorridorPipeline(resolver)

    first = asyncio.create_task(pipeline.route_computed(_route(1.0, 2.0)))
    await asyncio.sleep(0)  # first run is now blocked on its lookup

    second = await pipeline.route_computed(_route(10.0))
    assert [r.name for r in second.localities] == ["New"]

    gate.set()
    stale = await first

    assert stale.status == CorridorStatus.READY
    assert [r.name for r in stale.localities] == ["New"]
    assert [r.name for r in pipeline.result.localities] == ["New"]


@pytest.mark.asyncio
async def test_submit_cancels_in_flight_run():
    gate = asyncio.Event()
    resolver = _FakeResolver(
        {1.0: [_town("Old")], 10.0: [_town("New")]}, gates={1.0: gate}
    )
    pipeline = CorridorPipeline(resolver)

    first = pipeline.submit(_route(1.0))
    await asyncio.sleep(0)
    second = pipeline.submit(_route(10.0))
    result = await second
    await asyncio.gather(first, return_exceptions=True)

    assert first.cancelled()
    assert [r.name for r in result.localities] == ["New"]
    assert pipeline.status == CorridorStatus.READY


@pytest.mark.asyncio
async def test_route_failed_reports_reason_and_abandons_run():
    gate = asyncio.Event()
    resolver = _FakeResolver({1.0: [_town("Old")]}, gates={1.0: gate})
    pipeline = CorridorPipeline(resolver)

    running = asyncio.create_task(pipeline.route_computed(_route(1.0)))
    await asyncio.sleep(0)
    pipeline.route_failed("ZERO_RESULTS")
    gate.set()
    await running

    assert pipeline.status == CorridorStatus.FAILED
    assert pipeline.result.reason == "ZERO_RESULTS"
    assert pipeline.result.localities == []


@pytest.mark.asyncio
async def test_reset_clears_localities_and_ignores_late_results():
    gate = asyncio.Event()
    resolver = _FakeResolver(
        {1.0: [_town("Kept")], 2.0: [_town("Late")]}, gates={2.0: gate}
    )
    pipeline = CorridorPipeline(resolver)
    await pipeline.route_computed(_route(1.0))
    assert pipeline.status == CorridorStatus.READY

    running = asyncio.create_task(pipeline.route_computed(_route(2.0)))
    await asyncio.sleep(0)
    pipeline.reset()
    gate.set()
    await running

    assert pipeline.status == CorridorStatus.IDLE
    assert pipeline.result.localities == []


@pytest.mark.asyncio
async def test_pipeline_reenters_loading_after_failure():
    resolver = _FakeResolver({1.0: [_town("Gliwice")]})
    pipeline = CorridorPipeline(resolver)
    pipeline.route_failed("no path")

    result = await pipeline.route_computed(_route(1.0))

    assert result.status == CorridorStatus.READY
    assert result.reason is None


# ---------------------------------------------------------------------------
# run(): route provider integration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_resolves_provided_route():
    async def fetch_route():
        return _route(1.0)

    pipeline = CorridorPipeline(_FakeResolver({1.0: [_town("Gliwice")]}))
    result = await pipeline.run(fetch_route())
    assert result.status == CorridorStatus.READY


@pytest.mark.asyncio
async def test_run_maps_route_unavailable_to_failed():
    async def fetch_route():
        raise RouteUnavailable("No route found between origin and destination.")

    resolver = _FakeResolver({})
    pipeline = CorridorPipeline(resolver)
    result = await pipeline.run(fetch_route())

    assert result.status == CorridorStatus.FAILED
    assert "No route found" in result.reason
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_run_propagates_unexpected_errors():
    async def fetch_route():
        raise RuntimeError("boom")

    pipeline = CorridorPipeline(_FakeResolver({}))
    with pytest.raises(RuntimeError):
        await pipeline.run(fetch_route())


# ---------------------------------------------------------------------------
# Malformed input and failing resolvers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_malformed_geometry_leaves_published_state_untouched():
    seen = []
    resolver = _FakeResolver({1.0: [_town("Gliwice")]})
    pipeline = CorridorPipeline(resolver, on_change=lambda r: seen.append(r.status))
    await pipeline.route_computed(_route(1.0))

    with pytest.raises(InvalidInput):
        await pipeline.route_computed([{"foo": 1}])

    assert pipeline.status == CorridorStatus.READY
    assert [r.name for r in pipeline.result.localities] == ["Gliwice"]
    assert seen == [CorridorStatus.LOADING, CorridorStatus.READY]


@pytest.mark.asyncio
async def test_out_of_range_geometry_never_stays_loading():
    pipeline = CorridorPipeline(_FakeResolver({}))
    with pytest.raises(ValueError):
        await pipeline.route_computed([{"lat": 123.0, "lng": 19.0}])
    assert pipeline.status == CorridorStatus.IDLE


class _BrokenResolver(LocalityResolver):
    """Raises for one latitude while the other lookups are still waiting."""

    source = "broken"

    def __init__(self):
        super().__init__()
        self.cancelled = []

    async def resolve(self, point):
        if point.latitude == 1.0:
            raise RuntimeError("resolver bug")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled.append(point.latitude)
            raise
        return []


@pytest.mark.asyncio
async def test_concurrent_resolver_error_cancels_sibling_lookups():
    resolver = _BrokenResolver()
    pipeline = CorridorPipeline(resolver, target_count=3, concurrency=4)

    with pytest.raises(RuntimeError, match="resolver bug"):
        await pipeline.route_computed(_route(1.0, 2.0, 3.0))
    for _ in range(3):
        await asyncio.sleep(0)

    assert sorted(resolver.cancelled) == [2.0, 3.0]
