"""Drop vehicles whose trip has already finished."""

from collections.abc import Iterable
from datetime import datetime

from vehicle_aggregator.enrichment import VehicleMatch
from vehicle_aggregator.models import TripDetail

DEFAULT_GRACE_SECONDS = 300


def seconds_since_midnight(now: datetime) -> int:
    """Time of day of ``now`` in its own timezone, in whole seconds."""
    return now.hour * 3600 + now.minute * 60 + now.second


def is_relevant(
    detail: TripDetail | None,
    now_seconds: int,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> bool:
    """Check whether a trip is still worth showing.

    A trip is finished once its final realtime departure lies ``grace_seconds``
    or more in the past. Times of day are compared directly, so a trip ending
    just before midnight looks current again shortly after it.

    Args:
        detail: Trip detail of the vehicle, or None if it has none.
        now_seconds: Current time of day in seconds since midnight.
        grace_seconds: How long a finished trip is still shown.

    Returns:
        False only for trips known to have finished.
    """
    if detail is None:
        return True
    final_stop = detail.final_stop
    if final_stop is None or final_stop.realtime_departure is None:
        return True
    return final_stop.realtime_departure - now_seconds > -grace_seconds


def filter_relevant(
    matches: Iterable[VehicleMatch],
    now_seconds: int,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> list[VehicleMatch]:
    """Keep the matches whose trip has not finished, preserving order."""
    return [
        (position, detail)
        for position, detail in matches
        if is_relevant(detail, now_seconds, grace_seconds)
    ]
