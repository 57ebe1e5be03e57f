from damflow_core.ingestion.media import MediaInfo, probe
from damflow_core.ingestion.metrics import StageEvent, StageTimer
from damflow_core.ingestion.rate_limit import ModelRateLimiter, TokenBucket
from damflow_core.ingestion.scratch import asset_scratch, scratch_dir_name

__all__ = [
    "MediaInfo",
    "ModelRateLimiter",
    "StageEvent",
    "StageTimer",
    "TokenBucket",
    "asset_scratch",
    "probe",
    "scratch_dir_name",
]
