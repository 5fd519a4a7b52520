"""Driving route computation via the Google Directions API.

Produces the route geometry consumed by the corridor pipeline: either the
decoded overview polyline (dense coordinates) or the step end points.
"""

import asyncio
import logging
import os
from typing import Any

import googlemaps
from googlemaps import exceptions as gmaps_exceptions

from errors import RouteUnavailable
from models import Coordinate, Maneuver
from route_sampling import decode_polyline

logger = logging.getLogger(__name__)

TRAVEL_MODE: str = "driving"


async def compute_route(
    origin: Coordinate,
    destination: Coordinate,
    *,
    maps_client: googlemaps.Client | None = None,
    mode: str = TRAVEL_MODE,
) -> list[Coordinate]:
    """Returns the overview path of the best route from origin to destination.

    Args:
        origin: Route start.
        destination: Route end.
        maps_client: Optional pre-constructed Google Maps client. Created from
            ``GOOGLE_MAPS_API_KEY`` environment variable if omitted.
        mode: Directions travel mode.

    Raises:
        RouteUnavailable: If no route exists or the Directions API fails.
    """
    route = await fetch_directions(
        origin, destination, maps_client=maps_client, mode=mode
    )
    encoded = route.get("overview_polyline", {}).get("points", "")
    try:
        points = decode_polyline(encoded)
    except (IndexError, ValueError) as exc:
        raise RouteUnavailable(f"Route polyline could not be decoded: {exc}") from exc
    if not points:
        # Fall back to step end points when the overview is missing.
        points = [m.end_point for m in steps_to_maneuvers(route)]
    if not points:
        raise RouteUnavailable("Directions API returned a route without geometry.")
    logger.info("Route computed: %d path points", len(points))
    return points


async def fetch_directions(
    origin: Coordinate,
    destination: Coordinate,
    *,
    maps_client: googlemaps.Client | None = None,
    mode: str = TRAVEL_MODE,
) -> dict[str, Any]:
    """Returns the first Directions API route between the two points."""
    try:
        _maps = maps_client or googlemaps.Client(
            key=os.environ.get("GOOGLE_MAPS_API_KEY", "")
        )
    except ValueError as exc:
        raise RouteUnavailable(f"Directions API not configured: {exc}") from exc

    try:
        # googlemaps is synchronous; keep it off the event loop.
        result = await asyncio.to_thread(
            _maps.directions,
            origin=(origin.latitude, origin.longitude),
            destination=(destination.latitude, destination.longitude),
            mode=mode,
        )
    except (
        gmaps_exceptions.ApiError,
        gmaps_exceptions.TransportError,
        gmaps_exceptions.Timeout,
    ) as exc:
        logger.error("Directions API error: %s", exc)
        raise RouteUnavailable(f"Directions API error: {exc}") from exc

    if not result:
        raise RouteUnavailable("No route found between origin and destination.")
    return result[0]


def steps_to_maneuvers(route: dict[str, Any]) -> list[Maneuver]:
    """Returns one maneuver per Directions step, across all legs, in order."""
    maneuvers: list[Maneuver] = []
    for leg in route.get("legs", []):
        for step in leg.get("steps", []):
            end = step.get("end_location")
            if not end:
                continue
            maneuvers.append(
                Maneuver(
                    end_point=Coordinate(latitude=end["lat"], longitude=end["lng"])
                )
            )
    return maneuvers
