"""Per-point locality lookup against an external geocoding or places service.

Two interchangeable strategies share the ``LocalityResolver`` interface:

  ReverseGeocodeResolver
    One Google reverse-geocode call per point; returns the single best
    locality (or None) by scanning candidates in ``LOCALITY_PRIORITY`` order.

  NearbyPlacesResolver
    One Overpass radius query per point; returns every named city, town,
    village or hamlet within the radius.

Each ``resolve`` call makes exactly one outbound request and never raises for
service-side problems: timeouts, network errors and malformed payloads are
logged and mapped to "no locality for this point" so that one bad lookup
cannot abort a whole route.

``build_resolver`` picks the strategy once, from configuration, probing
whether the preferred source is usable before constructing it.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any

import googlemaps
import httpx
from googlemaps import exceptions as gmaps_exceptions

from errors import InvalidInput, PointResolutionFailure, ServiceUnreachable
from models import Coordinate, LocalityRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lookup rules: tuneable constants in one place.
# ---------------------------------------------------------------------------

# Seconds to wait for a single point lookup before treating it as empty.
LOOKUP_TIMEOUT_S: float = 10.0

# -- Reverse geocoding ------------------------------------------------------
# Google result types accepted as a locality, highest precedence first.
LOCALITY_PRIORITY: tuple[str, ...] = (
    "locality",
    "administrative_area_level_2",
    "postal_town",
)
DEFAULT_LANGUAGE: str = "en"

# -- Nearby places (Overpass) -----------------------------------------------
DEFAULT_RADIUS_M: int = 30_000
OVERPASS_URL: str = "https://overpass-api.de/api/interpreter"
OVERPASS_PLACE_FILTER: str = "city|town|village|hamlet"
OVERPASS_QUERY_TIMEOUT_S: int = 25

SOURCE_GEOCODE = "geocode"
SOURCE_NEARBY = "nearby"
SOURCES: frozenset = frozenset({SOURCE_GEOCODE, SOURCE_NEARBY})


class LocalityResolver(ABC):
    """Looks up the locality (or localities) at a single route point."""

    source: str = ""

    def __init__(self, *, timeout_s: float = LOOKUP_TIMEOUT_S):
        self.timeout_s = timeout_s

    @abstractmethod
    async def resolve(
        self, point: Coordinate
    ) -> LocalityRecord | list[LocalityRecord] | None:
        """Returns what the service knows about ``point``; never raises for
        service failures."""


# ---------------------------------------------------------------------------
# Reverse geocoding
# ---------------------------------------------------------------------------


class ReverseGeocodeResolver(LocalityResolver):
    """Resolves a point to one locality via the Google Geocoding API."""

    source = SOURCE_GEOCODE

    def __init__(
        self,
        maps_client: googlemaps.Client,
        *,
        language: str = DEFAULT_LANGUAGE,
        timeout_s: float = LOOKUP_TIMEOUT_S,
    ):
        super().__init__(timeout_s=timeout_s)
        self._maps = maps_client
        self.language = language

    async def resolve(self, point: Coordinate) -> LocalityRecord | None:
        try:
            candidates = await asyncio.wait_for(
                self._lookup(point), timeout=self.timeout_s
            )
            return _pick_locality(candidates)
        except asyncio.TimeoutError:
            logger.warning(
                "Reverse geocode timed out after %.1fs at %f, %f",
                self.timeout_s, point.latitude, point.longitude,
            )
        except PointResolutionFailure as exc:
            logger.warning(
                "Reverse geocode failed at %f, %f: %s",
                point.latitude, point.longitude, exc,
            )
        return None

    async def _lookup(self, point: Coordinate) -> Any:
        # googlemaps is synchronous; keep it off the event loop.
        try:
            return await asyncio.to_thread(
                self._maps.reverse_geocode,
                (point.latitude, point.longitude),
                language=self.language,
            )
        except (gmaps_exceptions.TransportError, gmaps_exceptions.Timeout) as exc:
            raise ServiceUnreachable(f"Geocoding service unreachable: {exc}") from exc
        except gmaps_exceptions.ApiError as exc:
            raise PointResolutionFailure(f"Geocoding API error: {exc}") from exc


def _pick_locality(candidates: Any) -> LocalityRecord | None:
    """Returns the highest-precedence locality among reverse-geocode results.

    Precedence is by type first, then by candidate order: a ``locality``
    anywhere in the list beats an earlier ``postal_town``.
    """
    if not isinstance(candidates, list):
        raise PointResolutionFailure(
            f"Unexpected geocoder payload: {type(candidates).__name__}"
        )
    try:
        for kind in LOCALITY_PRIORITY:
            for candidate in candidates:
                if kind not in candidate.get("types", []):
                    continue
                name = _component_name(candidate, kind)
                if not name:
                    continue
                return LocalityRecord(
                    id=candidate.get("place_id"),
                    name=name,
                    kind=kind,
                    coordinate=_candidate_location(candidate),
                )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise PointResolutionFailure(f"Malformed geocoder candidate: {exc}") from exc
    return None


def _component_name(candidate: dict[str, Any], kind: str) -> str:
    """Returns the long name of the address component tagged ``kind``."""
    components = candidate.get("address_components", [])
    for component in components:
        if kind in component.get("types", []):
            return component.get("long_name", "")
    if components:
        return components[0].get("long_name", "")
    return ""


def _candidate_location(candidate: dict[str, Any]) -> Coordinate | None:
    location = candidate.get("geometry", {}).get("location")
    if not location:
        return None
    return Coordinate(latitude=location["lat"], longitude=location["lng"])


# ---------------------------------------------------------------------------
# Nearby places (Overpass)
# ---------------------------------------------------------------------------


class NearbyPlacesResolver(LocalityResolver):
    """Resolves a point to every named place within a radius via Overpass."""

    source = SOURCE_NEARBY

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        url: str = OVERPASS_URL,
        radius_m: int = DEFAULT_RADIUS_M,
        timeout_s: float = LOOKUP_TIMEOUT_S,
    ):
        super().__init__(timeout_s=timeout_s)
        self._http = http_client
        self.url = url
        self.radius_m = radius_m

    async def resolve(
        self, point: Coordinate, radius_m: int | None = None
    ) -> list[LocalityRecord]:
        radius = radius_m or self.radius_m
        try:
            payload = await asyncio.wait_for(
                self._query(build_overpass_query(point, radius)),
                timeout=self.timeout_s,
            )
            return _parse_elements(payload)
        except asyncio.TimeoutError:
            logger.warning(
                "Overpass query timed out after %.1fs at %f, %f",
                self.timeout_s, point.latitude, point.longitude,
            )
        except PointResolutionFailure as exc:
            logger.warning(
                "Overpass query failed at %f, %f: %s",
                point.latitude, point.longitude, exc,
            )
        return []

    async def _query(self, query: str) -> Any:
        if self._http is not None:
            return await self._post(self._http, query)
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            return await self._post(client, query)

    async def _post(self, client: httpx.AsyncClient, query: str) -> Any:
        try:
            response = await client.post(
                self.url,
                content=query,
                headers={"Content-Type": "text/plain"},
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise PointResolutionFailure(
                f"Overpass returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise ServiceUnreachable(f"Overpass unreachable: {exc}") from exc
        except ValueError as exc:
            raise PointResolutionFailure(f"Overpass returned invalid JSON: {exc}") from exc


def build_overpass_query(point: Coordinate, radius_m: int) -> str:
    """Builds the Overpass QL radius query for populated places."""
    return (
        f"[out:json][timeout:{OVERPASS_QUERY_TIMEOUT_S}];\n"
        f"(\n"
        f'  node["place"~"{OVERPASS_PLACE_FILTER}"]'
        f"(around:{radius_m},{point.latitude},{point.longitude});\n"
        f");\n"
        f"out body;\n"
    )


def _parse_elements(payload: Any) -> list[LocalityRecord]:
    """Normalises Overpass elements into locality records.

    Elements without a name, or without a usable position, are skipped.
    """
    elements = payload.get("elements") if isinstance(payload, dict) else None
    if not isinstance(elements, list):
        raise PointResolutionFailure("Overpass payload has no elements list.")

    records: list[LocalityRecord] = []
    for element in elements:
        if not isinstance(element, dict):
            continue
        tags = element.get("tags") or {}
        name = tags.get("name")
        if not name:
            continue
        try:
            records.append(
                LocalityRecord(
                    id=str(element["id"]),
                    name=name,
                    kind=tags.get("place"),
                    coordinate=Coordinate(
                        latitude=element["lat"], longitude=element["lon"]
                    ),
                )
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed Overpass element: %r", element)
    return records


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------


def build_resolver(
    source: str | None = None,
    *,
    maps_client: googlemaps.Client | None = None,
    http_client: httpx.AsyncClient | None = None,
    radius_m: int | None = None,
    language: str | None = None,
    timeout_s: float = LOOKUP_TIMEOUT_S,
) -> LocalityResolver:
    """Constructs the configured resolver, falling back when it is unusable.

    Args:
        source: ``"geocode"`` or ``"nearby"``. Read from ``LOCALITY_SOURCE``
            when omitted; defaults to ``"nearby"``.
        maps_client: Optional pre-constructed Google Maps client. Created from
            ``GOOGLE_MAPS_API_KEY`` if omitted.
        http_client: Optional ``httpx.AsyncClient`` for Overpass queries.
        radius_m: Search radius for the nearby-places strategy.
        language: Result language for reverse geocoding. Read from
            ``GEOCODE_LANGUAGE`` when omitted.

    The geocode strategy needs Google credentials. Without them the
    nearby-places strategy is used instead, which needs none.

    Raises:
        InvalidInput: If ``source`` names no known strategy.
    """
    chosen = (source or os.environ.get("LOCALITY_SOURCE", SOURCE_NEARBY)).strip().lower()
    if chosen not in SOURCES:
        raise InvalidInput(
            f"Unknown locality source {chosen!r}; expected one of {sorted(SOURCES)}."
        )

    if chosen == SOURCE_GEOCODE:
        maps = maps_client or _probe_maps_client()
        if maps is not None:
            return ReverseGeocodeResolver(
                maps,
                language=language or os.environ.get("GEOCODE_LANGUAGE", DEFAULT_LANGUAGE),
                timeout_s=timeout_s,
            )
        logger.warning("Reverse geocoding unavailable; using nearby-places lookup")

    return NearbyPlacesResolver(
        http_client,
        url=os.environ.get("OVERPASS_URL", OVERPASS_URL),
        radius_m=radius_m or DEFAULT_RADIUS_M,
        timeout_s=timeout_s,
    )


def _probe_maps_client() -> googlemaps.Client | None:
    """Returns a Google Maps client if credentials are configured."""
    api_key = os.environ.get("GOOGLE_MAPS_API_KEY", "")
    if not api_key:
        return None
    try:
        return googlemaps.Client(key=api_key)
    except ValueError as exc:
        logger.warning("Google Maps client rejected API key: %s", exc)
        return None
