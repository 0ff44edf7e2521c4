from .processor import BackfillProcessor, build_backfill_worker
from .queue import BACKFILL_QUEUE_CONFIG, EngagementBackfillQueue

__all__ = [
    "EngagementBackfillQueue",
    "BackfillProcessor",
    "BACKFILL_QUEUE_CONFIG",
    "build_backfill_worker",
]
