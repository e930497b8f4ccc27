"""Tests for the vehicle pipeline and dataset service."""

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest
from prometheus_client import REGISTRY

from vehicle_aggregator.cache import ResultCache
from vehicle_aggregator.client import TransportError, UpstreamError
from vehicle_aggregator.models import DatasetConfig
from vehicle_aggregator.pipeline import (
    DatasetService,
    Snapshot,
    UnknownDatasetError,
    VehiclePipeline,
)

from conftest import BUDAPEST


def _skipped_count(dataset: str) -> float:
    value = REGISTRY.get_sample_value(
        "vehicle_agg_skipped_positions_total", {"dataset": dataset}
    )
    return value or 0.0


def _pipeline(client: Any, now: Callable[[], datetime]) -> VehiclePipeline:
    return VehiclePipeline(client, timezone=BUDAPEST, now=now)


class TestVehiclePipeline:
    """Tests for VehiclePipeline.run."""

    async def test_untiled_dataset_single_query(
        self,
        stub_client_cls: Any,
        make_position: Any,
        make_trip: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        """Trains are fetched with one bounding-box query for the dataset's modes."""
        client = stub_client_cls(
            positions=[make_position("v-1", "T1"), make_position("v-2", "T2")],
            trips={"T1": make_trip("T1"), "T2": make_trip("T2")},
        )

        vehicles = await _pipeline(client, noon).run(train_dataset)

        assert len(vehicles) == 2
        [call] = client.position_calls
        assert call["modes"] == ["RAIL", "SUBURBAN_RAILWAY"]
        assert (call["swLat"], call["neLon"]) == (45.74, 22.90)
        assert [c["serviceDay"] for c in client.trip_calls] == ["2026-10-19", "2026-10-19"]

    async def test_tiled_dataset_queries_four_tiles(
        self,
        stub_client_cls: Any,
        make_position: Any,
        bus_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        quadrant_keys: list[tuple[float, float]],
    ) -> None:
        """Coaches come from four tile queries whose results are concatenated."""
        client = stub_client_cls(
            positions_by_box={
                key: [make_position(f"v-{i}-{j}", None) for j in range(i + 1)]
                for i, key in enumerate(quadrant_keys)
            }
        )

        vehicles = await _pipeline(client, noon).run(bus_dataset)

        assert len(client.position_calls) == 4
        assert len(vehicles) == 1 + 2 + 3 + 4

    async def test_failed_tile_tolerated(
        self,
        stub_client_cls: Any,
        make_position: Any,
        bus_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        quadrant_keys: list[tuple[float, float]],
    ) -> None:
        """One failing tile still yields the other three tiles' vehicles."""
        client = stub_client_cls(
            positions_by_box={key: [make_position("v", None)] * 2 for key in quadrant_keys},
            failing_boxes={quadrant_keys[2]},
        )

        vehicles = await _pipeline(client, noon).run(bus_dataset)

        assert len(vehicles) == 6

    async def test_untiled_failure_aborts(
        self,
        stub_client_cls: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        """A failed top-level positions query fails the run."""
        client = stub_client_cls(failing_boxes={(45.74, 16.11)})

        with pytest.raises(TransportError):
            await _pipeline(client, noon).run(train_dataset)

    async def test_vehicle_without_coordinates_skipped(
        self,
        stub_client_cls: Any,
        make_position: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        """A position that does not parse costs only that vehicle."""
        unlocated = make_position("v-3", None) | {"lat": None}
        client = stub_client_cls(
            positions=[make_position("v-1", None), unlocated, make_position("v-2", None)],
        )
        before = _skipped_count("train")

        vehicles = await _pipeline(client, noon).run(train_dataset)

        assert len(vehicles) == 2
        assert _skipped_count("train") == before + 1

    async def test_positions_not_a_list_raise_upstream_error(
        self,
        stub_client_cls: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        client = stub_client_cls(positions={"vehicleId": "v-1"})

        with pytest.raises(UpstreamError, match="Malformed vehicle positions"):
            await _pipeline(client, noon).run(train_dataset)

    async def test_failed_trip_leaves_vehicle_unenriched(
        self,
        stub_client_cls: Any,
        make_position: Any,
        make_trip: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        """A trip-detail failure only costs that vehicle its enrichment."""
        client = stub_client_cls(
            positions=[make_position("v-1", "T1"), make_position("v-2", "T2")],
            trips={"T1": make_trip("T1")},
            failing_trips={"T2"},
        )

        vehicles = await _pipeline(client, noon).run(train_dataset)

        assert [v.start for v in vehicles] == ["Szeged", None]
        assert vehicles[1].timetable == []

    async def test_finished_trips_filtered(
        self,
        stub_client_cls: Any,
        make_position: Any,
        make_trip: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        """Vehicles whose trip ended over five minutes ago are dropped."""
        client = stub_client_cls(
            positions=[
                make_position("v-1", "T1", headsign="finished"),
                make_position("v-2", "T2", headsign="ending"),
                make_position("v-3", None, headsign="unknown"),
            ],
            trips={
                "T1": make_trip("T1", final_departure=11 * 3600 + 54 * 60),
                "T2": make_trip("T2", final_departure=11 * 3600 + 56 * 60 + 30),
            },
        )

        vehicles = await _pipeline(client, noon).run(train_dataset)

        assert [v.trip.trip_headsign for v in vehicles if v.trip] == ["ending"]
        assert len(vehicles) == 2

    async def test_duplicate_trips_queried_once(
        self,
        stub_client_cls: Any,
        make_position: Any,
        make_trip: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
    ) -> None:
        """Vehicles sharing a trip trigger one detail query and both get enriched."""
        client = stub_client_cls(
            positions=[make_position("v-1", "T1"), make_position("v-2", "T1")],
            trips={"T1": make_trip("T1")},
        )

        vehicles = await _pipeline(client, noon).run(train_dataset)

        assert len(client.trip_calls) == 1
        assert [v.start for v in vehicles] == ["Szeged", "Szeged"]


class TestDatasetService:
    """Tests for DatasetService caching behavior."""

    @pytest.fixture
    def clock(self) -> list[float]:
        return [1_000.0]

    def _service(
        self,
        client: Any,
        now: Callable[[], datetime],
        datasets: list[DatasetConfig],
        clock: list[float],
    ) -> DatasetService:
        cache: ResultCache[Snapshot] = ResultCache(window_seconds=20.0, clock=lambda: clock[0])
        return DatasetService(_pipeline(client, now), cache, datasets)

    async def test_cache_hit_serves_identical_bytes(
        self,
        stub_client_cls: Any,
        make_position: Any,
        make_trip: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        clock: list[float],
    ) -> None:
        """Within the window the same body is served with zero upstream calls."""
        client = stub_client_cls(
            positions=[make_position("v-1", "T1")],
            trips={"T1": make_trip("T1")},
        )
        service = self._service(client, noon, [train_dataset], clock)

        first = await service.get_snapshot("train")
        calls_after_first = len(client.calls)
        clock[0] += 19.0
        second = await service.get_snapshot("train")

        assert second.value.body == first.value.body
        assert len(client.calls) == calls_after_first

    async def test_expired_entry_recomputed_once(
        self,
        stub_client_cls: Any,
        make_position: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        clock: list[float],
    ) -> None:
        """At the window boundary exactly one new pipeline run happens."""
        client = stub_client_cls(positions=[make_position("v-1", None)])
        service = self._service(client, noon, [train_dataset], clock)

        await service.get_snapshot("train")
        clock[0] += 20.0
        await service.get_snapshot("train")
        await service.get_snapshot("train")

        assert len(client.position_calls) == 2

    async def test_failure_keeps_stale_snapshot(
        self,
        stub_client_cls: Any,
        make_position: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        clock: list[float],
    ) -> None:
        """A failed run surfaces the error and leaves the cached snapshot alone."""
        client = stub_client_cls(positions=[make_position("v-1", None)])
        service = self._service(client, noon, [train_dataset], clock)
        good = await service.get_snapshot("train")

        clock[0] += 30.0
        client.failing_boxes.add((45.74, 16.11))
        with pytest.raises(TransportError):
            await service.get_snapshot("train")

        assert service.cache.peek("train") is good

    async def test_snapshot_body_is_json_array(
        self,
        stub_client_cls: Any,
        make_position: Any,
        make_trip: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        clock: list[float],
    ) -> None:
        client = stub_client_cls(
            positions=[make_position("v-1", "T1")],
            trips={"T1": make_trip("T1")},
        )
        service = self._service(client, noon, [train_dataset], clock)

        entry = await service.get_snapshot("train")
        body = json.loads(entry.value.body)

        assert isinstance(body, list)
        assert body[0]["start"] == "Szeged"
        assert body[0]["delay"] == 3.0
        assert "vehicleId" not in body[0]

    async def test_unknown_dataset(
        self,
        stub_client_cls: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        clock: list[float],
    ) -> None:
        service = self._service(stub_client_cls(), noon, [train_dataset], clock)

        with pytest.raises(UnknownDatasetError):
            await service.get_snapshot("tram")

    async def test_refresh_bypasses_cache(
        self,
        stub_client_cls: Any,
        make_position: Any,
        train_dataset: DatasetConfig,
        noon: Callable[[], datetime],
        clock: list[float],
    ) -> None:
        client = stub_client_cls(positions=[make_position("v-1", None)])
        service = self._service(client, noon, [train_dataset], clock)

        await service.get_snapshot("train")
        await service.refresh("train")

        assert len(client.position_calls) == 2
