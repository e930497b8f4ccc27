"""Shared pytest fixtures for Vehicle Aggregator tests."""

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from vehicle_aggregator.client import TransportError
from vehicle_aggregator.models import BoundingBox, DatasetConfig
from vehicle_aggregator.queries import TRIP_DETAIL_QUERY, VEHICLE_POSITIONS_QUERY

BUDAPEST = ZoneInfo("Europe/Budapest")
COVERAGE = BoundingBox(sw_lat=45.74, sw_lon=16.11, ne_lat=48.58, ne_lon=22.90)

type BoxKey = tuple[float, float]


def box_key(box: BoundingBox) -> BoxKey:
    return (box.sw_lat, box.sw_lon)


def _make_position(
    vehicle_id: str,
    trip_id: str | None,
    lat: float = 47.5,
    lon: float = 19.04,
    headsign: str = "Budapest-Nyugati",
    short_name: str = "IC 712",
) -> dict[str, Any]:
    trip = None
    if trip_id is not None:
        trip = {"gtfsId": trip_id, "tripHeadsign": headsign, "tripShortName": short_name}
    return {
        "vehicleId": vehicle_id,
        "lat": lat,
        "lon": lon,
        "speed": 24.5,
        "heading": 315.0,
        "trip": trip,
    }


def _make_trip(
    trip_id: str,
    final_departure: int = 46800,
    arrival_delay: int | None = 120,
    departure_delay: int | None = 180,
    points: str = "_p~iF~ps|U_ulLnnqC",
    origin: str = "Szeged",
    destination: str = "Budapest-Nyugati",
) -> dict[str, Any]:
    return {
        "id": trip_id,
        "tripGeometry": {"points": points},
        "stoptimes": [
            {
                "stop": {"name": origin},
                "scheduledArrival": 36000,
                "realtimeArrival": 36000,
                "scheduledDeparture": 36300,
                "realtimeDeparture": 36360,
                "arrivalDelay": 0,
                "departureDelay": 60,
            },
            {
                "stop": {"name": destination},
                "scheduledArrival": final_departure - 300,
                "realtimeArrival": final_departure - 120,
                "scheduledDeparture": final_departure - 180,
                "realtimeDeparture": final_departure,
                "arrivalDelay": arrival_delay,
                "departureDelay": departure_delay,
            },
        ],
    }


@pytest.fixture
def make_position() -> Callable[..., dict[str, Any]]:
    """Factory for upstream vehiclePositions entries."""
    return _make_position


@pytest.fixture
def make_trip() -> Callable[..., dict[str, Any]]:
    """Factory for upstream trip-detail objects."""
    return _make_trip


class StubGraphQLClient:
    """In-memory stand-in for GraphQLClient answering the two query shapes."""

    def __init__(
        self,
        positions: list[dict[str, Any]] | None = None,
        positions_by_box: Mapping[BoxKey, list[dict[str, Any]]] | None = None,
        trips: Mapping[str, dict[str, Any] | None] | None = None,
        failing_boxes: set[BoxKey] | None = None,
        failing_trips: set[str] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.positions = positions or []
        self.positions_by_box = dict(positions_by_box or {})
        self.trips = dict(trips or {})
        self.failing_boxes = failing_boxes or set()
        self.failing_trips = failing_trips or set()
        self.gate = gate
        self.calls: list[tuple[str, dict[str, Any]]] = []

    @property
    def position_calls(self) -> list[dict[str, Any]]:
        return [v for q, v in self.calls if q == VEHICLE_POSITIONS_QUERY]

    @property
    def trip_calls(self) -> list[dict[str, Any]]:
        return [v for q, v in self.calls if q == TRIP_DETAIL_QUERY]

    async def execute(
        self,
        query: str,
        variables: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        variables = dict(variables or {})
        self.calls.append((query, variables))
        if self.gate is not None:
            await self.gate.wait()

        if query == VEHICLE_POSITIONS_QUERY:
            key = (variables["swLat"], variables["swLon"])
            if key in self.failing_boxes:
                raise TransportError("Unexpected status 503", status_code=503)
            return {"vehiclePositions": self.positions_by_box.get(key, self.positions)}

        if query == TRIP_DETAIL_QUERY:
            trip_id = variables["id"]
            if trip_id in self.failing_trips:
                raise TransportError("Timed out after 10.0s")
            return {"trip": self.trips.get(trip_id)}

        raise AssertionError(f"Unexpected query: {query}")


@pytest.fixture
def train_dataset() -> DatasetConfig:
    """Untiled train dataset over the default coverage area."""
    return DatasetConfig(
        name="train",
        path="/fetch-train-data",
        modes=["RAIL", "SUBURBAN_RAILWAY"],
        bounding_box=COVERAGE,
    )


@pytest.fixture
def bus_dataset() -> DatasetConfig:
    """Tiled bus dataset over the default coverage area."""
    return DatasetConfig(
        name="bus",
        path="/fetch-bus-data",
        modes=["COACH"],
        bounding_box=COVERAGE,
        tiled=True,
    )


@pytest.fixture
def noon() -> Callable[[], datetime]:
    """Clock fixed at 12:00:00 local service time."""
    return lambda: datetime(2026, 10, 19, 12, 0, 0, tzinfo=BUDAPEST)


@pytest.fixture
def sample_datasets_yaml() -> str:
    """Return sample datasets.yaml content."""
    return """
datasets:
  - name: train
    path: /fetch-train-data
    modes: [RAIL, TRAMTRAIN]
    bounding_box:
      sw_lat: 45.74
      sw_lon: 16.11
      ne_lat: 48.58
      ne_lon: 22.90

  - name: bus
    path: /fetch-bus-data
    modes: [COACH]
    tiled: true
    bounding_box:
      sw_lat: 45.0
      sw_lon: 16.0
      ne_lat: 49.0
      ne_lon: 23.0
"""


@pytest.fixture
def sample_datasets_file(tmp_path: Path, sample_datasets_yaml: str) -> Path:
    """Create a temporary datasets.yaml file."""
    datasets_file = tmp_path / "datasets.yaml"
    datasets_file.write_text(sample_datasets_yaml)
    return datasets_file


@pytest.fixture
def stub_client_cls() -> type[StubGraphQLClient]:
    """The in-memory GraphQL client class, for tests that configure their own."""
    return StubGraphQLClient


@pytest.fixture
def quadrant_keys() -> list[BoxKey]:
    """South-west corners of the four default coverage quadrants, in tile order."""
    return [box_key(box) for box in COVERAGE.quadrants()]
