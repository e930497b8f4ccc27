"""APScheduler-based background refresh of dataset caches."""

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler import AsyncScheduler, CoalescePolicy
from apscheduler.triggers.interval import IntervalTrigger

from vehicle_aggregator.client import UpstreamQueryError
from vehicle_aggregator.logging import get_logger

if TYPE_CHECKING:
    from vehicle_aggregator.pipeline import DatasetService

# APScheduler v4 needs importable job functions, so jobs look their
# scheduler up by id instead of closing over it
_scheduler_registry: dict[str, "PrefetchScheduler"] = {}


async def _execute_scheduled_refresh(scheduler_id: str, dataset: str) -> None:
    """Module-level job function for APScheduler.

    Args:
        scheduler_id: Unique ID of the scheduler instance.
        dataset: Name of the dataset to refresh.
    """
    scheduler = _scheduler_registry.get(scheduler_id)
    if scheduler is not None:
        await scheduler.refresh(dataset)


class PrefetchScheduler:
    """Keeps every dataset's cache warm by refreshing it once per cache window."""

    def __init__(
        self,
        service: "DatasetService",
        interval_seconds: float,
        misfire_grace_time: float = 5.0,
    ) -> None:
        """Initialize the prefetch scheduler.

        Args:
            service: Dataset service whose datasets are refreshed.
            interval_seconds: Time between refreshes of one dataset.
            misfire_grace_time: Seconds after scheduled time to still run a job.
        """
        self._id = str(uuid.uuid4())
        self._service = service
        self._interval_seconds = interval_seconds
        self._misfire_grace_time = misfire_grace_time
        self._scheduler: AsyncScheduler | None = None
        self._logger = get_logger(__name__)

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None and self._scheduler.state.name == "started"

    def get_job_count(self) -> int:
        """Get the number of scheduled jobs (one per dataset)."""
        return len(self._service.datasets)

    async def refresh(self, dataset: str) -> None:
        """Refresh one dataset, logging instead of raising on failure.

        Args:
            dataset: Name of the dataset to refresh.
        """
        try:
            entry = await self._service.refresh(dataset)
        except UpstreamQueryError as e:
            self._logger.warning(
                "prefetch_failed",
                dataset=dataset,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return
        except Exception as e:
            self._logger.exception(
                "prefetch_unknown_error",
                dataset=dataset,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return

        self._logger.debug(
            "prefetch_success",
            dataset=dataset,
            vehicles=len(entry.value.vehicles),
        )

    async def start(self) -> None:
        """Start the scheduler and register one refresh job per dataset."""
        _scheduler_registry[self._id] = self

        self._scheduler = AsyncScheduler()
        await self._scheduler.__aenter__()

        # Stagger datasets across the interval so their fan-outs do not overlap
        now = datetime.now(UTC)
        datasets = self._service.datasets
        for index, dataset in enumerate(datasets):
            offset = self._interval_seconds * index / len(datasets)
            trigger = IntervalTrigger(
                seconds=self._interval_seconds,
                start_time=now + timedelta(seconds=offset),
            )
            await self._scheduler.add_schedule(
                _execute_scheduled_refresh,
                trigger=trigger,
                id=f"prefetch-{dataset.name}",
                kwargs={"scheduler_id": self._id, "dataset": dataset.name},
                misfire_grace_time=self._misfire_grace_time,
                coalesce=CoalescePolicy.latest,
            )

        await self._scheduler.start_in_background()

    async def stop(self, wait: bool = True) -> None:
        """Stop the scheduler.

        Args:
            wait: If True, wait for running jobs to complete.
        """
        if self._scheduler is not None:
            await self._scheduler.stop()
            if wait:
                await self._scheduler.wait_until_stopped()
            await self._scheduler.__aexit__(None, None, None)
            self._scheduler = None

        _scheduler_registry.pop(self._id, None)
