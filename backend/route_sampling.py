"""Route sampling: pick a bounded, evenly spaced subset of route points.

Corridor lookups cost one external call per point, so a dense route polyline
is thinned to roughly ``target_count`` query targets before resolution. The
destination end of the route is always kept.
"""

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from errors import InvalidInput
from models import Coordinate, Maneuver, SampledPoint

# Default number of points queried per route.
DEFAULT_TARGET_COUNT: int = 10


def sample(points: Sequence[Coordinate], target_count: int) -> list[SampledPoint]:
    """Selects every n-th point of ``points``, plus the final point.

    The stride is ``max(1, len(points) // target_count)``. Identical
    coordinates are not collapsed; each selected point is queried on its own.

    Raises:
        InvalidInput: If ``target_count`` is less than 1.
    """
    if target_count < 1:
        raise InvalidInput(f"target_count must be >= 1, got {target_count}.")
    if not points:
        return []

    stride = max(1, len(points) // target_count)
    indices = list(range(0, len(points), stride))
    last = len(points) - 1
    if indices[-1] != last:
        indices.append(last)

    return [SampledPoint(index=i, coordinate=points[i]) for i in indices]


def route_points(geometry: Iterable[Any]) -> list[Coordinate]:
    """Flattens a route geometry into an ordered list of coordinates.

    Accepts either a polyline (coordinates) or a sequence of maneuvers. Items
    may be model instances or plain mappings, including Directions API steps
    that carry an ``end_location`` of ``{"lat", "lng"}``.
    """
    return [_to_coordinate(item) for item in geometry]


def _to_coordinate(item: Any) -> Coordinate:
    if isinstance(item, Coordinate):
        return item
    if isinstance(item, Maneuver):
        return item.end_point
    if isinstance(item, Mapping):
        if "end_point" in item:
            return _to_coordinate(item["end_point"])
        if "end_location" in item:
            return _to_coordinate(item["end_location"])
        if "latitude" in item:
            return Coordinate(latitude=item["latitude"], longitude=item["longitude"])
        if "lat" in item:
            return Coordinate(latitude=item["lat"], longitude=item["lng"])
    if isinstance(item, tuple) and len(item) == 2:
        return Coordinate(latitude=item[0], longitude=item[1])
    raise InvalidInput(f"Unrecognised route geometry item: {item!r}")


def decode_polyline(encoded: str) -> list[Coordinate]:
    """Decodes a Google-encoded polyline string to a list of coordinates.

    Implements the standard Google polyline encoding algorithm.
    See: https://developers.google.com/maps/documentation/utilities/polylinealgorithm
    """
    result: list[Coordinate] = []
    index = 0
    lat = 0
    lng = 0

    while index < len(encoded):
        deltas = []
        for _ in range(2):
            shift = 0
            value = 0
            while True:
                b = ord(encoded[index]) - 63
                index += 1
                value |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(value >> 1) if (value & 1) else (value >> 1))
        lat += deltas[0]
        lng += deltas[1]
        result.append(Coordinate(latitude=lat / 1e5, longitude=lng / 1e5))

    return result
