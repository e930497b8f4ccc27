"""Builders for the two GraphQL query shapes consumed from upstream."""

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from vehicle_aggregator.models import BoundingBox

VEHICLE_POSITIONS_QUERY = """
query VehiclePositions(
  $swLat: Float!, $swLon: Float!, $neLat: Float!, $neLon: Float!, $modes: [Mode]
) {
  vehiclePositions(
    swLat: $swLat, swLon: $swLon, neLat: $neLat, neLon: $neLon, modes: $modes
  ) {
    vehicleId
    lat
    lon
    speed
    heading
    trip {
      gtfsId
      tripHeadsign
      tripShortName
    }
  }
}
"""

TRIP_DETAIL_QUERY = """
query TripDetail($id: String!, $serviceDay: String) {
  trip(id: $id, serviceDay: $serviceDay) {
    id: gtfsId
    tripGeometry {
      points
    }
    stoptimes {
      arrivalDelay
      departureDelay
      scheduledArrival
      realtimeArrival
      scheduledDeparture
      realtimeDeparture
      stop {
        name
      }
    }
  }
}
"""


@dataclass(frozen=True)
class GraphQLRequest:
    """A query document together with its variables."""

    query: str
    variables: dict[str, Any] = field(default_factory=dict)


def vehicle_positions_query(box: BoundingBox, modes: list[str]) -> GraphQLRequest:
    """Build the vehicle-positions query for one bounding box.

    Args:
        box: Area to query.
        modes: Upstream transport mode names (e.g. "RAIL", "COACH").

    Returns:
        Query and variables ready for GraphQLClient.execute.
    """
    return GraphQLRequest(
        query=VEHICLE_POSITIONS_QUERY,
        variables={
            "swLat": box.sw_lat,
            "swLon": box.sw_lon,
            "neLat": box.ne_lat,
            "neLon": box.ne_lon,
            "modes": list(modes),
        },
    )


def trip_detail_query(trip_id: str, service_day: date) -> GraphQLRequest:
    """Build the trip-detail query for one trip on one service day.

    Args:
        trip_id: Upstream trip identifier.
        service_day: Civil date the trip instance runs on.

    Returns:
        Query and variables ready for GraphQLClient.execute.
    """
    return GraphQLRequest(
        query=TRIP_DETAIL_QUERY,
        variables={"id": trip_id, "serviceDay": service_day.isoformat()},
    )
