"""Join live vehicle positions with their trips' timetable and geometry."""

import asyncio
from collections.abc import Iterable, Sequence
from datetime import date

from pydantic import ValidationError

from vehicle_aggregator.client import GraphQLClient, UpstreamError
from vehicle_aggregator.fanout import PartialDataError, gather_lenient
from vehicle_aggregator.models import (
    EnrichedVehicle,
    StopTime,
    TimetableEntry,
    TripDetail,
    TripSummary,
    VehiclePosition,
)
from vehicle_aggregator.queries import trip_detail_query

MINUTES_PER_DAY = 24 * 60

type VehicleMatch = tuple[VehiclePosition, TripDetail | None]


def format_time(seconds_since_midnight: int | None) -> str | None:
    """Render seconds since midnight as HH:MM, wrapping past 24h as UTC clocks do.

    Args:
        seconds_since_midnight: Upstream time value, or None.

    Returns:
        The formatted time, or None when the value is absent.
    """
    if seconds_since_midnight is None:
        return None
    minutes = (seconds_since_midnight // 60) % MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def delay_minutes(stop_time: StopTime | None) -> float | None:
    """Delay of a stop in minutes: the larger of arrival and departure delay.

    Absent values are ignored; None when neither is present.
    """
    if stop_time is None:
        return None
    delays = [
        d for d in (stop_time.arrival_delay, stop_time.departure_delay) if d is not None
    ]
    if not delays:
        return None
    return max(delays) / 60


def collect_trip_ids(positions: Iterable[VehiclePosition]) -> list[str]:
    """Unique trip identifiers of the given vehicles, in first-seen order."""
    seen: dict[str, None] = {}
    for position in positions:
        trip_id = position.trip_identifier
        if trip_id:
            seen.setdefault(trip_id, None)
    return list(seen)


async def fetch_trip_detail(
    client: GraphQLClient,
    trip_id: str,
    service_day: date,
    semaphore: asyncio.Semaphore,
) -> TripDetail | None:
    """Fetch one trip's detail; None when upstream does not know the trip.

    Raises:
        TransportError: If the query could not be completed.
        UpstreamError: If upstream reports an error or returns a malformed trip.
    """
    request = trip_detail_query(trip_id, service_day)
    async with semaphore:
        data = await client.execute(request.query, request.variables)

    trip = data.get("trip")
    if trip is None:
        return None
    try:
        return TripDetail.model_validate(trip)
    except ValidationError as e:
        raise UpstreamError([f"Malformed trip {trip_id}: {e}"]) from e


async def fetch_trip_details(
    client: GraphQLClient,
    dataset: str,
    trip_ids: Sequence[str],
    service_day: date,
    semaphore: asyncio.Semaphore,
) -> list[TripDetail]:
    """Fetch details for every trip concurrently; failed trips are skipped."""
    outcomes = await gather_lenient(
        dataset,
        "trip",
        [
            (trip_id, fetch_trip_detail(client, trip_id, service_day, semaphore))
            for trip_id in trip_ids
        ],
    )
    return [
        outcome
        for outcome in outcomes
        if outcome is not None and not isinstance(outcome, PartialDataError)
    ]


def match_trip_details(
    positions: Iterable[VehiclePosition],
    details: Iterable[TripDetail],
) -> list[VehicleMatch]:
    """Pair every vehicle with the detail of its trip, if one was fetched.

    One detail may match several vehicles. Vehicles without a trip identifier
    or without a fetched detail are paired with None.
    """
    by_id = {detail.id: detail for detail in details}
    matches: list[VehicleMatch] = []
    for position in positions:
        trip_id = position.trip_identifier
        matches.append((position, by_id.get(trip_id) if trip_id else None))
    return matches


def build_timetable(stoptimes: Iterable[StopTime]) -> list[TimetableEntry]:
    """One timetable entry per stop-time, with times formatted as HH:MM."""
    return [
        TimetableEntry(
            place=st.stop_name,
            expected_arrival=format_time(st.scheduled_arrival),
            real_arrival=format_time(st.realtime_arrival),
            expected_departure=format_time(st.scheduled_departure),
            real_departure=format_time(st.realtime_departure),
        )
        for st in stoptimes
    ]


def enrich_vehicle(position: VehiclePosition, detail: TripDetail | None) -> EnrichedVehicle:
    """Build the outgoing record for a vehicle and its (optional) trip detail."""
    trip = None
    if position.trip is not None:
        trip = TripSummary(
            trip_headsign=position.trip.trip_headsign,
            trip_short_name=position.trip.trip_short_name,
        )

    if detail is None:
        return EnrichedVehicle(
            lat=position.lat,
            lon=position.lon,
            speed=position.speed,
            heading=position.heading,
            trip=trip,
        )

    return EnrichedVehicle(
        lat=position.lat,
        lon=position.lon,
        speed=position.speed,
        heading=position.heading,
        trip=trip,
        delay=delay_minutes(detail.final_stop),
        route=detail.trip_geometry.points if detail.trip_geometry is not None else None,
        start=detail.stoptimes[0].stop_name if detail.stoptimes else None,
        timetable=build_timetable(detail.stoptimes),
    )
