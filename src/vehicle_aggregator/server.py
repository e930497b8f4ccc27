"""HTTP API serving vehicle datasets, health checks and Prometheus metrics."""

import json
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from aiohttp import web
from prometheus_client import REGISTRY
from prometheus_client.openmetrics.exposition import (
    CONTENT_TYPE_LATEST,
    generate_latest,
)

from vehicle_aggregator.client import UpstreamQueryError
from vehicle_aggregator.logging import get_logger
from vehicle_aggregator.metrics import get_last_success_timestamp
from vehicle_aggregator.models import DatasetConfig

if TYPE_CHECKING:
    from vehicle_aggregator.pipeline import DatasetService
    from vehicle_aggregator.scheduler import PrefetchScheduler

type Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

ERROR_MESSAGE = "Failed to fetch data"


def _error_response(message: str, status: int) -> web.Response:
    return web.Response(
        text=json.dumps({"error": message}),
        status=status,
        content_type="application/json",
    )


class ApiServer:
    """HTTP server exposing one endpoint per dataset plus operational endpoints."""

    def __init__(
        self,
        service: "DatasetService",
        host: str = "0.0.0.0",
        port: int = 3000,
        cors_allow_origin: str = "*",
        scheduler: "PrefetchScheduler | None" = None,
    ) -> None:
        """Initialize the API server.

        Args:
            service: Dataset service answering dataset requests.
            host: Interface to bind.
            port: Port to listen on.
            cors_allow_origin: Value of the Access-Control-Allow-Origin header.
            scheduler: Optional prefetch scheduler for readiness reporting.
        """
        self.service = service
        self.host = host
        self.port = port
        self.cors_allow_origin = cors_allow_origin
        self.scheduler = scheduler
        self._logger = get_logger(__name__)
        self._start_time = time.time()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        """Build the aiohttp application with all routes registered."""
        app = web.Application(middlewares=[self._cors_middleware])
        for dataset in self.service.datasets:
            app.router.add_get(dataset.path, self._dataset_handler(dataset))
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/health/datasets", self._handle_datasets)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/metrics", self._handle_metrics)
        return app

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
            response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "*"
        else:
            response = await handler(request)
        response.headers["Access-Control-Allow-Origin"] = self.cors_allow_origin
        return response

    def _dataset_handler(self, dataset: DatasetConfig) -> Handler:
        async def handle(_request: web.Request) -> web.StreamResponse:
            return await self._handle_dataset(dataset)

        return handle

    async def _handle_dataset(self, dataset: DatasetConfig) -> web.Response:
        """Serve a dataset snapshot, computing it on a cache miss.

        Args:
            dataset: Dataset bound to the requested path.

        Returns:
            200 with the JSON vehicle array, or 500 with an error object.
        """
        try:
            entry = await self.service.get_snapshot(dataset.name)
        except UpstreamQueryError as e:
            self._logger.error(
                "pipeline_error",
                dataset=dataset.name,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return _error_response(ERROR_MESSAGE, 500)
        except Exception as e:
            self._logger.exception(
                "pipeline_unknown_error",
                dataset=dataset.name,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return _error_response(ERROR_MESSAGE, 500)

        return web.Response(body=entry.value.body, content_type="application/json")

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint."""
        now = time.time()
        status: dict[str, object] = {
            "status": "healthy",
            "uptime_seconds": round(now - self._start_time, 2),
            "datasets": {
                dataset.name: self._cache_age(dataset.name, now)
                for dataset in self.service.datasets
            },
        }

        if self.scheduler is not None:
            status["prefetch"] = {
                "running": self.scheduler.is_running,
                "jobs_scheduled": self.scheduler.get_job_count(),
            }

        return web.json_response(status)

    async def _handle_datasets(self, _request: web.Request) -> web.Response:
        """Handle /health/datasets endpoint with per-dataset status."""
        now = time.time()
        datasets = []
        for dataset in self.service.datasets:
            last_success = get_last_success_timestamp(dataset.name)
            entry = self.service.cache.peek(dataset.name)
            datasets.append(
                {
                    "dataset": dataset.name,
                    "path": dataset.path,
                    "tiled": dataset.tiled,
                    "query_count": len(dataset.query_boxes()),
                    "cache_window_seconds": self.service.cache.window_seconds,
                    "cached_vehicles": len(entry.value.vehicles) if entry is not None else None,
                    "cache_age_seconds": self._cache_age(dataset.name, now),
                    "last_success_seconds_ago": (
                        round(now - last_success, 1) if last_success is not None else None
                    ),
                }
            )

        return web.json_response(datasets)

    def _cache_age(self, name: str, now: float) -> float | None:
        entry = self.service.cache.peek(name)
        return round(entry.age(now), 1) if entry is not None else None

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint; 503 while an enabled prefetcher is not running."""
        if self.scheduler is not None and not self.scheduler.is_running:
            return web.Response(
                text=json.dumps({"status": "not_ready", "reason": "prefetch_not_running"}),
                status=503,
                content_type="application/json",
            )

        return web.json_response({"status": "ready"})

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        metrics = generate_latest(REGISTRY)  # type: ignore[no-untyped-call]
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(
            body=metrics,
            content_type=content_type,
            charset="utf-8",
        )

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
