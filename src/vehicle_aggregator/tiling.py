"""Spatial tiling of vehicle queries whose population exceeds one query's limit."""

from collections.abc import Awaitable, Callable, Sequence

from vehicle_aggregator.fanout import PartialDataError, gather_lenient
from vehicle_aggregator.models import BoundingBox


def tile_identity(index: int, box: BoundingBox) -> str:
    """Human-readable tile label used in logs."""
    return f"tile-{index} ({box.sw_lat},{box.sw_lon})-({box.ne_lat},{box.ne_lon})"


async def fetch_tiled[T](
    dataset: str,
    boxes: Sequence[BoundingBox],
    fetch: Callable[[BoundingBox], Awaitable[list[T]]],
) -> list[T]:
    """Query every tile concurrently and concatenate the results.

    Results keep tile order and are not deduplicated. A failed tile
    contributes nothing; if every tile fails, the last failure is raised.

    Args:
        dataset: Dataset name, for diagnostics.
        boxes: Tiles to query.
        fetch: Coroutine function querying one tile.

    Returns:
        Concatenated items from all successful tiles.

    Raises:
        UpstreamQueryError: If no tile succeeded.
    """
    outcomes = await gather_lenient(
        dataset,
        "tile",
        [(tile_identity(i, box), fetch(box)) for i, box in enumerate(boxes)],
    )

    combined: list[T] = []
    failures: list[PartialDataError] = []
    for outcome in outcomes:
        if isinstance(outcome, PartialDataError):
            failures.append(outcome)
        else:
            combined.extend(outcome)

    if failures and len(failures) == len(outcomes):
        raise failures[-1].cause

    return combined
