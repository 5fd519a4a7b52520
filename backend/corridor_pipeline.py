"""Route corridor resolution pipeline.

Three-step async pipeline, run once per computed route:
  1.  Sample the route geometry down to roughly ``target_count`` points.
  2.  Resolve each sampled point to localities through the configured
      ``LocalityResolver``, one lookup at a time unless concurrency is enabled.
  3.  Aggregate the per-point results into a deduplicated, route-ordered list.

The pipeline is a small state machine observed by the UI layer:

    idle -> loading -> ready | empty | failed

Each new route re-enters ``loading``. Runs are tagged with a run id; a run
that has been superseded (new route, failure report, or reset) finishes
silently without touching the published state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from errors import InvalidInput, RouteUnavailable
from locality_aggregation import PointResult, aggregate
from locality_resolver import LocalityResolver
from models import CorridorResult, CorridorStatus, SampledPoint
from route_sampling import DEFAULT_TARGET_COUNT, route_points, sample

logger = logging.getLogger(__name__)

ChangeListener = Callable[[CorridorResult], None]


class CorridorPipeline:
    """Owns the corridor result for the latest route and keeps it consistent.

    Args:
        resolver: Strategy used to look up each sampled point.
        target_count: Approximate number of route points to query.
        concurrency: Maximum lookups in flight at once. 1 (the default)
            resolves points strictly one after another.
        on_change: Called with the new result after every state transition.
    """

    def __init__(
        self,
        resolver: LocalityResolver,
        *,
        target_count: int = DEFAULT_TARGET_COUNT,
        concurrency: int = 1,
        on_change: ChangeListener | None = None,
    ):
        if target_count < 1:
            raise InvalidInput(f"target_count must be >= 1, got {target_count}.")
        if concurrency < 1:
            raise InvalidInput(f"concurrency must be >= 1, got {concurrency}.")
        self._resolver = resolver
        self.target_count = target_count
        self.concurrency = concurrency
        self._on_change = on_change
        self._result = CorridorResult()
        self._run_id = 0
        self._task: asyncio.Task | None = None

    @property
    def result(self) -> CorridorResult:
        return self._result

    @property
    def status(self) -> CorridorStatus:
        return self._result.status

    # -- Transitions ---------------------------------------------------------

    async def route_computed(self, geometry: Iterable[Any]) -> CorridorResult:
        """Resolves the localities along a freshly computed route.

        Returns the published result. If another route, a failure, or a
        reset arrived while this one was resolving, this run's localities
        are discarded and the current result is returned unchanged.
        """
        # Malformed geometry fails here, before the published state changes.
        samples = sample(route_points(geometry), self.target_count)

        run_id = self._begin_run()
        self._publish(CorridorResult(status=CorridorStatus.LOADING))
        logger.info(
            "Corridor run %d started: %d sampled points via %s",
            run_id, len(samples), self._resolver.source,
        )

        results = await self._resolve_all(samples)
        localities = aggregate(results)

        if run_id != self._run_id:
            logger.info("Corridor run %d superseded; discarding results", run_id)
            return self._result

        status = CorridorStatus.READY if localities else CorridorStatus.EMPTY
        self._publish(CorridorResult(status=status, localities=localities))
        logger.info(
            "Corridor run %d complete: %s, %d localities",
            run_id, status.value, len(localities),
        )
        return self._result

    def submit(self, geometry: Iterable[Any]) -> asyncio.Task:
        """Schedules resolution for a new route, cancelling any in-flight run.

        Must be called from a running event loop.
        """
        self._cancel_task()
        self._task = asyncio.ensure_future(self.route_computed(geometry))
        return self._task

    def route_failed(self, reason: str) -> CorridorResult:
        """Records that no route could be computed."""
        self._begin_run()
        self._cancel_task()
        logger.info("Route unavailable: %s", reason)
        self._publish(CorridorResult(status=CorridorStatus.FAILED, reason=reason))
        return self._result

    async def run(
        self, fetch_route: Awaitable[Iterable[Any]]
    ) -> CorridorResult:
        """Awaits a route provider call, then resolves its corridor.

        ``RouteUnavailable`` from the provider moves the pipeline to failed;
        any other exception propagates.
        """
        try:
            geometry = await fetch_route
        except RouteUnavailable as exc:
            return self.route_failed(str(exc))
        return await self.route_computed(geometry)

    def reset(self) -> CorridorResult:
        """Abandons any in-flight run and returns to idle with no localities."""
        self._begin_run()
        self._cancel_task()
        self._publish(CorridorResult(status=CorridorStatus.IDLE))
        return self._result

    # -- Internals -----------------------------------------------------------

    def _begin_run(self) -> int:
        self._run_id += 1
        return self._run_id

    def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def _publish(self, result: CorridorResult) -> None:
        self._result = result
        if self._on_change is not None:
            self._on_change(result)

    async def _resolve_all(self, samples: list[SampledPoint]) -> list[PointResult]:
        if self.concurrency == 1:
            return [await self._resolver.resolve(s.coordinate) for s in samples]

        semaphore = asyncio.Semaphore(self.concurrency)

        async def resolve_one(s: SampledPoint) -> tuple[int, PointResult]:
            async with semaphore:
                return s.index, await self._resolver.resolve(s.coordinate)

        tasks = [asyncio.ensure_future(resolve_one(s)) for s in samples]
        try:
            indexed = await asyncio.gather(*tasks)
        finally:
            # A failed lookup leaves no siblings running behind it.
            for task in tasks:
                task.cancel()
        # Dedup is first-seen-wins, so order by sample index, never completion.
        return [result for _, result in sorted(indexed, key=lambda pair: pair[0])]


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
