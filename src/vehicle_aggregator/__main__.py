"""Main entry point for Vehicle Aggregator."""

import asyncio
import signal

from vehicle_aggregator.cache import ResultCache
from vehicle_aggregator.client import GraphQLClient, create_http_client
from vehicle_aggregator.config import Settings
from vehicle_aggregator.logging import configure_logging, get_logger
from vehicle_aggregator.pipeline import DatasetService, Snapshot, VehiclePipeline
from vehicle_aggregator.scheduler import PrefetchScheduler
from vehicle_aggregator.server import ApiServer


async def run() -> None:
    """Run the Vehicle Aggregator."""
    settings = Settings()

    configure_logging(settings.log_level, settings.log_format)
    logger = get_logger(__name__)

    datasets = settings.load_datasets()

    logger.info(
        "starting",
        upstream_url=settings.upstream_url,
        datasets=[dataset.name for dataset in datasets],
        cache_ttl_seconds=settings.cache_ttl_seconds,
        proxy_configured=settings.upstream_proxy is not None,
        prefetch_enabled=settings.prefetch_enabled,
    )

    http_client = create_http_client(
        headers=settings.upstream_headers,
        proxy=settings.upstream_proxy,
        max_connections=settings.max_concurrent_queries + len(datasets) * 4,
    )
    client = GraphQLClient(
        http_client,
        settings.upstream_url,
        timeout_seconds=settings.request_timeout_seconds,
    )

    pipeline = VehiclePipeline(
        client,
        timezone=settings.timezone,
        grace_seconds=settings.relevance_grace_seconds,
        max_concurrent_queries=settings.max_concurrent_queries,
    )
    cache: ResultCache[Snapshot] = ResultCache(settings.cache_ttl_seconds)
    service = DatasetService(pipeline, cache, datasets)

    scheduler = None
    if settings.prefetch_enabled:
        scheduler = PrefetchScheduler(service, interval_seconds=settings.cache_ttl_seconds)

    server = ApiServer(
        service,
        host=settings.host,
        port=settings.port,
        cors_allow_origin=settings.cors_allow_origin,
        scheduler=scheduler,
    )

    shutdown_event = asyncio.Event()

    def handle_shutdown(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await server.start()
        logger.info(
            "server_started",
            host=settings.host,
            port=settings.port,
            paths=[dataset.path for dataset in datasets],
        )

        if scheduler is not None:
            await scheduler.start()
            logger.info("prefetch_started", jobs=scheduler.get_job_count())

        await shutdown_event.wait()

    finally:
        logger.info("shutting_down")

        if scheduler is not None:
            await scheduler.stop(wait=True)
            logger.info("prefetch_stopped")

        await server.stop()
        logger.info("server_stopped")

        await http_client.aclose()

        logger.info("shutdown_complete")


def main() -> None:
    """Entry point for the Vehicle Aggregator."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
