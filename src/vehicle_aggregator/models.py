"""Pydantic models for Vehicle Aggregator configuration and vehicle records."""

from typing import Annotated, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class BoundingBox(BaseModel):
    """Geographic rectangle given by its south-west and north-east corners."""

    model_config = ConfigDict(frozen=True)

    sw_lat: float = Field(ge=-90.0, le=90.0)
    sw_lon: float = Field(ge=-180.0, le=180.0)
    ne_lat: float = Field(ge=-90.0, le=90.0)
    ne_lon: float = Field(ge=-180.0, le=180.0)

    @model_validator(mode="after")
    def validate_corners(self) -> Self:
        """Ensure the south-west corner lies below and left of the north-east corner."""
        if self.sw_lat >= self.ne_lat:
            raise ValueError("sw_lat must be less than ne_lat")
        if self.sw_lon >= self.ne_lon:
            raise ValueError("sw_lon must be less than ne_lon")
        return self

    def quadrants(self) -> list["BoundingBox"]:
        """Split the box into four quadrants by bisecting both axes.

        Returns:
            Quadrants ordered south-west, south-east, north-west, north-east.
        """
        mid_lat = (self.sw_lat + self.ne_lat) / 2
        mid_lon = (self.sw_lon + self.ne_lon) / 2
        return [
            BoundingBox(sw_lat=self.sw_lat, sw_lon=self.sw_lon, ne_lat=mid_lat, ne_lon=mid_lon),
            BoundingBox(sw_lat=self.sw_lat, sw_lon=mid_lon, ne_lat=mid_lat, ne_lon=self.ne_lon),
            BoundingBox(sw_lat=mid_lat, sw_lon=self.sw_lon, ne_lat=self.ne_lat, ne_lon=mid_lon),
            BoundingBox(sw_lat=mid_lat, sw_lon=mid_lon, ne_lat=self.ne_lat, ne_lon=self.ne_lon),
        ]


class DatasetConfig(BaseModel):
    """Configuration for one served dataset (e.g. trains or coaches)."""

    model_config = ConfigDict(frozen=True)

    name: Annotated[str, Field(pattern=r"^[a-z0-9-]+$")]
    path: Annotated[str, Field(pattern=r"^/[A-Za-z0-9/_-]*$")]
    modes: list[str] = Field(min_length=1)
    bounding_box: BoundingBox

    # Split the bounding box into four sub-queries
    tiled: bool = False
    tiles: list[BoundingBox] | None = None

    @model_validator(mode="after")
    def validate_tiles(self) -> Self:
        """Explicit tiles are only allowed on tiled datasets and must number four."""
        if self.tiles is not None:
            if not self.tiled:
                raise ValueError("tiles can only be set when tiled is true")
            if len(self.tiles) != 4:
                raise ValueError("tiles must contain exactly four bounding boxes")
        return self

    def query_boxes(self) -> list[BoundingBox]:
        """Get the bounding boxes this dataset is queried with."""
        if not self.tiled:
            return [self.bounding_box]
        if self.tiles is not None:
            return list(self.tiles)
        return self.bounding_box.quadrants()


class DatasetsFileConfig(BaseModel):
    """Schema for the datasets.yaml configuration file."""

    datasets: list[DatasetConfig] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_unique(self) -> Self:
        """Ensure dataset names and paths are unique."""
        names = [d.name for d in self.datasets]
        paths = [d.path for d in self.datasets]
        if len(set(names)) != len(names):
            raise ValueError("Dataset names must be unique")
        if len(set(paths)) != len(paths):
            raise ValueError("Dataset paths must be unique")
        return self


# Upstream records (parsed from GraphQL responses)


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class TripReference(_UpstreamModel):
    """Trip a vehicle is currently running, as reported with its position."""

    gtfs_id: str | None = None
    trip_id: str | None = None
    id: str | None = None
    trip_headsign: str | None = None
    trip_short_name: str | None = None

    @property
    def identifier(self) -> str | None:
        """First non-empty trip identifier, used to join with trip details."""
        return self.gtfs_id or self.trip_id or self.id or None


class VehiclePosition(_UpstreamModel):
    """Live position of one vehicle."""

    vehicle_id: str | None = None
    lat: float
    lon: float
    speed: float | None = None
    heading: float | None = None
    trip: TripReference | None = None

    @property
    def trip_identifier(self) -> str | None:
        return self.trip.identifier if self.trip is not None else None


class Stop(_UpstreamModel):
    name: str | None = None


class StopTime(_UpstreamModel):
    """Scheduled and realtime times of a trip at one stop (seconds since midnight)."""

    stop: Stop | None = None
    scheduled_arrival: int | None = None
    realtime_arrival: int | None = None
    scheduled_departure: int | None = None
    realtime_departure: int | None = None
    arrival_delay: int | None = None
    departure_delay: int | None = None

    @property
    def stop_name(self) -> str | None:
        return self.stop.name if self.stop is not None else None


class TripGeometry(_UpstreamModel):
    points: str | None = None


class TripDetail(_UpstreamModel):
    """Timetable and geometry of one trip on one service day."""

    id: str
    trip_geometry: TripGeometry | None = None
    stoptimes: list[StopTime] = Field(default_factory=list)

    @property
    def final_stop(self) -> StopTime | None:
        return self.stoptimes[-1] if self.stoptimes else None


# Outgoing records (serialized with camelCase keys)


class _OutputModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TripSummary(_OutputModel):
    trip_headsign: str | None = None
    trip_short_name: str | None = None


class TimetableEntry(_OutputModel):
    """One stop of an enriched vehicle's timetable with HH:MM times."""

    place: str | None = None
    expected_arrival: str | None = None
    real_arrival: str | None = None
    expected_departure: str | None = None
    real_departure: str | None = None


class EnrichedVehicle(_OutputModel):
    """Vehicle position merged with its trip's delay, geometry and timetable.

    Vehicle and trip identifiers are not part of the output.
    """

    lat: float
    lon: float
    speed: float | None = None
    heading: float | None = None
    trip: TripSummary | None = None
    delay: float | None = None
    route: str | None = None
    start: str | None = None
    timetable: list[TimetableEntry] = Field(default_factory=list)
