"""Concurrent fan-out of upstream sub-queries with a lenient failure policy."""

import asyncio
from collections.abc import Awaitable, Sequence

from vehicle_aggregator.client import UpstreamQueryError
from vehicle_aggregator.logging import get_logger
from vehicle_aggregator.metrics import record_partial_failure

logger = get_logger(__name__)


class PartialDataError(Exception):
    """A sub-query (one tile or one trip) failed while the run continues."""

    def __init__(self, stage: str, identity: str, cause: UpstreamQueryError) -> None:
        self.stage = stage
        self.identity = identity
        self.cause = cause
        super().__init__(f"{stage} {identity} failed: {cause}")


async def gather_lenient[T](
    dataset: str,
    stage: str,
    calls: Sequence[tuple[str, Awaitable[T]]],
) -> list[T | PartialDataError]:
    """Run sub-queries concurrently, degrading upstream failures to values.

    Each failed call is logged, counted and returned in its slot as a
    PartialDataError. Any other exception propagates.

    Args:
        dataset: Dataset name, for diagnostics.
        stage: Pipeline stage ("tile" or "trip").
        calls: (identity, awaitable) pairs.

    Returns:
        One outcome per call, in call order.
    """
    results = await asyncio.gather(*(call for _, call in calls), return_exceptions=True)

    outcomes: list[T | PartialDataError] = []
    for (identity, _), result in zip(calls, results, strict=True):
        if isinstance(result, UpstreamQueryError):
            record_partial_failure(dataset, stage)
            logger.warning(
                f"{stage}_query_failed",
                dataset=dataset,
                identity=identity,
                error_type=type(result).__name__,
                error_message=str(result),
            )
            outcomes.append(PartialDataError(stage, identity, result))
        elif isinstance(result, BaseException):
            raise result
        else:
            outcomes.append(result)

    return outcomes
