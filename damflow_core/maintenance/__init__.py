from damflow_core.maintenance.backfill import (
    BACKFILL_STAGES,
    BackfillReport,
    BackfillRunner,
)
from damflow_core.maintenance.trash import PurgeReport, TrashService

__all__ = [
    "BACKFILL_STAGES",
    "BackfillReport",
    "BackfillRunner",
    "PurgeReport",
    "TrashService",
]
