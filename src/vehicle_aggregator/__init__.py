"""Vehicle Aggregator: live train and coach positions enriched with trip timetables."""

__version__ = "0.1.0"

from vehicle_aggregator.__main__ import main

__all__ = ["main", "__version__"]
