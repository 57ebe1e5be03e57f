from __future__ import annotations

import os

from damflow_core.assets.types import MediaFamily
from damflow_core.config import Config
from damflow_core.enrichment.client import ModelClient
from damflow_core.errors import DamflowError
from damflow_core.ingestion.media import MediaInfo
from damflow_core.logging import get_logger

logger = get_logger(__name__)

GIF_TRANSCRIPT = "[Animated GIF - Visuals Only]"


def should_transcribe(
    family: MediaFamily,
    info: MediaInfo,
    size_bytes: int,
    config: Config,
) -> bool:
    if family not in {MediaFamily.VIDEO, MediaFamily.AUDIO}:
        return False
    if size_bytes >= config.transcribe_max_bytes:
        return False
    # An empty probe means we could not tell; let the model decide.
    if not info.is_empty and not info.has_audio:
        return False
    return True


def transcribe_media(
    client: ModelClient,
    path: str,
    *,
    family: MediaFamily,
    info: MediaInfo,
    config: Config,
    asset_id: str | None = None,
) -> str | None:
    """Return a transcript, the GIF marker, or None.

    Transcription failures are logged and swallowed.
    """
    if family == MediaFamily.ANIMATION:
        return GIF_TRANSCRIPT
    size_bytes = os.path.getsize(path)
    if not should_transcribe(family, info, size_bytes, config):
        return None
    try:
        text = client.transcribe(path)
    except (DamflowError, OSError) as exc:
        logger.warning(
            "Transcription failed",
            extra={
                "asset_id": asset_id,
                "stage": "transcribe",
                "error_message": str(exc),
            },
        )
        return None
    return text or None
