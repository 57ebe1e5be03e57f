from damflow_core.assets.store import SqliteAssetStore, TrashPage
from damflow_core.assets.types import (
    AiData,
    Asset,
    IngestRequest,
    IngestState,
    MediaFamily,
    Specificity,
    media_family,
)

__all__ = [
    "AiData",
    "Asset",
    "IngestRequest",
    "IngestState",
    "MediaFamily",
    "SqliteAssetStore",
    "Specificity",
    "TrashPage",
    "media_family",
]
