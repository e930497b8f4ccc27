"""Fetch, enrich, filter and cache pipeline for vehicle datasets."""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any

from pydantic import TypeAdapter, ValidationError

from vehicle_aggregator.cache import CacheEntry, ResultCache
from vehicle_aggregator.client import GraphQLClient, UpstreamError
from vehicle_aggregator.enrichment import (
    collect_trip_ids,
    enrich_vehicle,
    fetch_trip_details,
    match_trip_details,
)
from vehicle_aggregator.logging import get_logger
from vehicle_aggregator.metrics import (
    record_cache_hit,
    record_cache_miss,
    record_filtered_vehicles,
    record_pipeline_error,
    record_pipeline_success,
    record_skipped_position,
)
from vehicle_aggregator.models import (
    BoundingBox,
    DatasetConfig,
    EnrichedVehicle,
    VehiclePosition,
)
from vehicle_aggregator.queries import vehicle_positions_query
from vehicle_aggregator.relevance import (
    DEFAULT_GRACE_SECONDS,
    filter_relevant,
    seconds_since_midnight,
)
from vehicle_aggregator.tiling import fetch_tiled

_vehicles_adapter = TypeAdapter(list[EnrichedVehicle])


class UnknownDatasetError(KeyError):
    """Requested dataset is not configured."""


@dataclass(frozen=True)
class Snapshot:
    """Enriched vehicles of one pipeline run and their serialized JSON body."""

    vehicles: tuple[EnrichedVehicle, ...]
    body: bytes

    @classmethod
    def from_vehicles(cls, vehicles: Sequence[EnrichedVehicle]) -> "Snapshot":
        return cls(
            vehicles=tuple(vehicles),
            body=_vehicles_adapter.dump_json(list(vehicles), by_alias=True),
        )


class VehiclePipeline:
    """Builds the enriched, filtered vehicle list of a dataset from upstream."""

    def __init__(
        self,
        client: GraphQLClient,
        timezone: tzinfo,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
        max_concurrent_queries: int = 20,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            client: Upstream GraphQL client.
            timezone: Timezone of the upstream service day and time-of-day values.
            grace_seconds: How long a finished trip is still shown.
            max_concurrent_queries: Bound on in-flight trip-detail queries.
            now: Clock returning an aware datetime; defaults to now in ``timezone``.
        """
        self._client = client
        self._timezone = timezone
        self._grace_seconds = grace_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent_queries)
        self._now = now or (lambda: datetime.now(self._timezone))
        self._logger = get_logger(__name__)

    async def fetch_positions(self, dataset: DatasetConfig) -> list[VehiclePosition]:
        """Fetch raw vehicle positions, one query per box of the dataset.

        Raises:
            TransportError: If an untiled query fails, or every tile fails.
            UpstreamError: Likewise, for GraphQL-level failures.
        """
        if not dataset.tiled:
            return await self._fetch_box(dataset, dataset.bounding_box)

        return await fetch_tiled(
            dataset.name,
            dataset.query_boxes(),
            lambda box: self._fetch_box(dataset, box),
        )

    async def _fetch_box(self, dataset: DatasetConfig, box: BoundingBox) -> list[VehiclePosition]:
        request = vehicle_positions_query(box, dataset.modes)
        data = await self._client.execute(request.query, request.variables)
        entries = data.get("vehiclePositions") or []
        if not isinstance(entries, list):
            raise UpstreamError(["Malformed vehicle positions: expected a list"])
        return self._parse_positions(dataset, entries)

    def _parse_positions(
        self,
        dataset: DatasetConfig,
        entries: list[Any],
    ) -> list[VehiclePosition]:
        """Parse position entries one by one, skipping those that do not validate."""
        positions: list[VehiclePosition] = []
        for entry in entries:
            try:
                positions.append(VehiclePosition.model_validate(entry))
            except ValidationError as e:
                record_skipped_position(dataset.name)
                self._logger.warning(
                    "vehicle_position_skipped",
                    dataset=dataset.name,
                    error_count=e.error_count(),
                    error_message=str(e),
                )
        return positions

    async def run(self, dataset: DatasetConfig) -> list[EnrichedVehicle]:
        """Execute the full pipeline for a dataset.

        Args:
            dataset: Dataset to build.

        Returns:
            Enriched vehicles, excluding those whose trip has finished.
        """
        now = self._now()
        positions = await self.fetch_positions(dataset)

        trip_ids = collect_trip_ids(positions)
        details = await fetch_trip_details(
            self._client,
            dataset.name,
            trip_ids,
            now.date(),
            self._semaphore,
        )

        matches = match_trip_details(positions, details)
        relevant = filter_relevant(matches, seconds_since_midnight(now), self._grace_seconds)
        if len(relevant) < len(matches):
            record_filtered_vehicles(dataset.name, len(matches) - len(relevant))

        self._logger.debug(
            "pipeline_joined",
            dataset=dataset.name,
            positions=len(positions),
            trips=len(trip_ids),
            details=len(details),
            relevant=len(relevant),
        )

        return [enrich_vehicle(position, detail) for position, detail in relevant]


class DatasetService:
    """Serves dataset snapshots from the cache, running the pipeline on a miss."""

    def __init__(
        self,
        pipeline: VehiclePipeline,
        cache: ResultCache[Snapshot],
        datasets: Sequence[DatasetConfig],
    ) -> None:
        self._pipeline = pipeline
        self._cache = cache
        self._datasets = {dataset.name: dataset for dataset in datasets}
        self._logger = get_logger(__name__)

    @property
    def datasets(self) -> list[DatasetConfig]:
        return list(self._datasets.values())

    @property
    def cache(self) -> ResultCache[Snapshot]:
        return self._cache

    def dataset(self, name: str) -> DatasetConfig:
        try:
            return self._datasets[name]
        except KeyError:
            raise UnknownDatasetError(name) from None

    async def get_snapshot(self, name: str) -> CacheEntry[Snapshot]:
        """Get a fresh snapshot of a dataset.

        Raises:
            UnknownDatasetError: If the dataset is not configured.
            UpstreamQueryError: If a needed pipeline run failed.
        """
        dataset = self.dataset(name)

        entry = self._cache.get(name)
        if entry is not None:
            record_cache_hit(name)
            self._logger.debug("cache_hit", dataset=name, computed_at=entry.computed_at)
            return entry

        record_cache_miss(name)
        return await self._cache.get_or_compute(name, lambda: self._build(dataset))

    async def refresh(self, name: str) -> CacheEntry[Snapshot]:
        """Rebuild a dataset's snapshot regardless of its freshness."""
        dataset = self.dataset(name)
        return await self._cache.refresh(name, lambda: self._build(dataset))

    async def _build(self, dataset: DatasetConfig) -> Snapshot:
        started = time.perf_counter()
        try:
            vehicles = await self._pipeline.run(dataset)
        except Exception:
            record_pipeline_error(dataset.name)
            raise

        duration = time.perf_counter() - started
        record_pipeline_success(dataset.name, duration, len(vehicles))
        self._logger.info(
            "pipeline_success",
            dataset=dataset.name,
            vehicles=len(vehicles),
            duration_ms=round(duration * 1000, 1),
        )
        return Snapshot.from_vehicles(vehicles)
