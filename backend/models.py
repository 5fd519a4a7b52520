"""Pydantic models for the route corridor localities backend."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

_OSM_BASE = "https://www.openstreetmap.org/"


class Coordinate(BaseModel):
    """A WGS84 point."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Maneuver(BaseModel):
    """A single route step; only its end point matters for corridor lookup."""

    model_config = ConfigDict(frozen=True)

    end_point: Coordinate


class SampledPoint(BaseModel):
    """A coordinate chosen as a query target.

    ``index`` is the position in the original route point sequence. It is used
    to restore sampling order when lookups complete out of order.
    """

    index: int = Field(ge=0)
    coordinate: Coordinate


class LocalityRecord(BaseModel):
    """A named populated place (city, town, village, hamlet)."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    """Service-assigned identifier (Google place_id or OSM node id)."""

    name: str = Field(min_length=1)

    kind: str | None = None
    """Place category as reported by the service, e.g. "town"."""

    coordinate: Coordinate | None = None

    def map_url(self) -> str | None:
        """Returns an OpenStreetMap link centred on the locality, if located."""
        if self.coordinate is None:
            return None
        lat = self.coordinate.latitude
        lng = self.coordinate.longitude
        return f"{_OSM_BASE}?mlat={lat}&mlon={lng}#map=11/{lat}/{lng}"


class CorridorStatus(str, Enum):
    """Lifecycle states of a corridor resolution run."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    EMPTY = "empty"
    FAILED = "failed"


class CorridorResult(BaseModel):
    """Observable state of the corridor pipeline."""

    status: CorridorStatus = CorridorStatus.IDLE

    localities: list[LocalityRecord] = Field(default_factory=list)
    """Deduplicated localities in first-seen (sampling) order."""

    reason: str | None = None
    """Why the route could not be computed; set only when status is failed."""


# ---------------------------------------------------------------------------
# HTTP request / response models
# ---------------------------------------------------------------------------


class PlaceInput(BaseModel):
    """A place selected by the user, as produced by the place-input widget."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    label: str = ""

    def coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)


class CorridorRequest(BaseModel):
    """Request body for the /route-localities endpoint."""

    origin: PlaceInput
    destination: PlaceInput

    source: str | None = None
    """Locality source: "geocode" or "nearby". Defaults to LOCALITY_SOURCE."""

    target_count: int = Field(default=10, ge=1)
    """Roughly how many route points to query."""

    radius_m: int | None = Field(default=None, gt=0)
    """Search radius for the nearby-places source."""


class GeocodeRequest(BaseModel):
    """Request body for the /geocode-address endpoint."""

    address: str
    language: str | None = None


class GeocodeResponse(BaseModel):
    """A geocoded address, in the shape the place-input widget yields."""

    latitude: float
    longitude: float
    label: str
