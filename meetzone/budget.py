import math

DEFAULT_BUFFER_SECONDS = 900


def compute_time_budget(travel_time: float, buffer_seconds: float = DEFAULT_BUFFER_SECONDS) -> int:
    """
    Per-traveler isochrone budget in seconds.

    Half of the direct travel time approximates a midpoint meeting; the
    buffer absorbs the fact that reachable areas are not symmetric disks.
    """
    if travel_time is None or travel_time < 0:
        raise ValueError(f"travel_time must be a non-negative number of seconds, got {travel_time!r}")
    if buffer_seconds < 0:
        raise ValueError(f"buffer_seconds must be non-negative, got {buffer_seconds!r}")
    return int(math.ceil(travel_time / 2 + buffer_seconds))
