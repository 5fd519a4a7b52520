"""Route corridor localities backend service.

Exposes endpoints for resolving the localities along a driving route and for
geocoding a manually typed address (the place-input fallback).
"""

import logging
import os

import googlemaps
import httpx
from fastapi import FastAPI, HTTPException

import route_provider
from corridor_pipeline import CorridorPipeline
from errors import InvalidInput
from locality_resolver import LOOKUP_TIMEOUT_S, build_resolver
from models import (
    CorridorRequest,
    CorridorResult,
    GeocodeRequest,
    GeocodeResponse,
)

logging.basicConfig(level=logging.INFO)

app = FastAPI(
    title="Route Corridor Localities",
    description="Finds the towns and villages along a driving route.",
    version="0.1.0",
)


def _maps_client() -> googlemaps.Client:
    return googlemaps.Client(key=os.environ.get("GOOGLE_MAPS_API_KEY", ""))


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint used to verify the service is live."""
    return {"status": "ok"}


@app.post("/route-localities", response_model=CorridorResult)
async def route_localities(request: CorridorRequest) -> CorridorResult:
    """Lists the localities along the driving route between two places.

    Runs a three-step pipeline:
    1. Google Directions API computes the driving route.
    2. Up to ``target_count`` evenly spaced route points are looked up via
       the configured locality source (reverse geocoding or Overpass).
    3. Results are merged into one deduplicated, route-ordered list.

    Args:
        request: ``CorridorRequest`` with origin, destination, and optional
            source, target_count, and radius_m overrides.

    Returns:
        ``CorridorResult`` whose status is ``ready`` (with localities),
        ``empty``, or ``failed`` (no route; ``reason`` explains why).

    Raises:
        HTTPException 400: If the locality source is unknown.
        HTTPException 502: On unexpected upstream failures.
    """
    async with httpx.AsyncClient(timeout=LOOKUP_TIMEOUT_S) as http_client:
        try:
            resolver = build_resolver(
                request.source,
                http_client=http_client,
                radius_m=request.radius_m,
            )
        except InvalidInput as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        pipeline = CorridorPipeline(resolver, target_count=request.target_count)
        try:
            return await pipeline.run(
                route_provider.compute_route(
                    request.origin.coordinate(),
                    request.destination.coordinate(),
                )
            )
        except Exception as exc:  # noqa: BLE001
            logging.exception("route_localities failed")
            raise HTTPException(
                status_code=502,
                detail="Failed to resolve localities along the route. Please try again.",
            ) from exc


@app.post("/geocode-address", response_model=GeocodeResponse)
async def geocode_address(request: GeocodeRequest) -> GeocodeResponse:
    """Geocodes a human-readable address to a selectable place.

    Used when the autocomplete widget is unavailable and the rider types an
    address by hand.

    Args:
        request: Contains ``address`` and an optional result ``language``.

    Returns:
        ``GeocodeResponse`` with latitude, longitude, and the formatted
        address as the label.

    Raises:
        HTTPException 400: If address is empty.
        HTTPException 404: If the address could not be geocoded.
        HTTPException 502: If the upstream Google Maps API call fails.
    """
    if not request.address.strip():
        raise HTTPException(
            status_code=400,
            detail="address must not be empty.",
        )
    language = request.language or os.environ.get("GEOCODE_LANGUAGE", "en")
    try:
        result = _maps_client().geocode(request.address, language=language)
        if not result:
            raise HTTPException(
                status_code=404,
                detail=f"Could not geocode address: {request.address!r}",
            )
        location = result[0]["geometry"]["location"]
        return GeocodeResponse(
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            label=result[0].get("formatted_address", request.address),
        )
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        logging.exception("geocode_address failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to geocode the address. Please try again.",
        ) from exc
