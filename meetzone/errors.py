from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    NO_ROUTE = "no_route"
    SEARCH_UNAVAILABLE = "search_unavailable"
    EMPTY_BOUNDARY = "empty_boundary"
    NO_INTERSECTION = "no_intersection"
    STALE_RESPONSE = "stale_response"


class MeetingZoneError(Exception):
    """Base error for the meeting-zone pipeline"""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, message: str = "", side: Optional[str] = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.side = side


class MissingCredentials(MeetingZoneError):
    """No usable key for an external service. Not retried."""

    kind = ErrorKind.MISSING_CREDENTIALS


class UpstreamUnavailable(MeetingZoneError):
    """Network or service failure talking to an external API"""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class NoRoute(UpstreamUnavailable):
    kind = ErrorKind.NO_ROUTE


class SearchUnavailable(UpstreamUnavailable):
    """Every place-category search failed"""

    kind = ErrorKind.SEARCH_UNAVAILABLE


class EmptyBoundary(MeetingZoneError):
    """The isochrone service returned no reachable area"""

    kind = ErrorKind.EMPTY_BOUNDARY


class StaleResponse(MeetingZoneError):
    """A completion arrived for an input pair that is no longer current"""

    kind = ErrorKind.STALE_RESPONSE
