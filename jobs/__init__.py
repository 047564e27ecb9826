"""
Jobs package initialization.

Exports job runners for scheduled tasks.
"""

from jobs.freshness import (
    BatchResult,
    FreshnessScheduler,
    run_refresh,
)
from jobs.safety_cache import (
    run_cleanup,
    run_stats,
    run_update,
)

__all__ = [
    # Market data freshness
    "BatchResult",
    "FreshnessScheduler",
    "run_refresh",
    # Dividend safety cache
    "run_cleanup",
    "run_stats",
    "run_update",
]
