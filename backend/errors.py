"""Exception taxonomy for corridor resolution."""


class CorridorError(Exception):
    """Base class for all corridor resolution errors."""


class InvalidInput(CorridorError, ValueError):
    """Malformed parameters; fatal to the call that received them."""


class RouteUnavailable(CorridorError):
    """The route provider could not compute a route between the two points."""


class PointResolutionFailure(CorridorError):
    """A single sampled point's lookup failed or returned nothing usable.

    Raised inside the resolvers and recovered there: the point is treated as
    having no locality.
    """


class ServiceUnreachable(PointResolutionFailure):
    """Network-level failure talking to the geocoding or places service."""
