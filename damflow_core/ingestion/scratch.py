from __future__ import annotations

import shutil
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from damflow_core.logging import get_logger

logger = get_logger(__name__)


def scratch_dir_name(asset_id: str) -> str:
    return f"{asset_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@contextmanager
def asset_scratch(root: str, asset_id: str) -> Iterator[Path]:
    """Yield a private working directory that is removed on every exit path."""
    path = Path(root) / scratch_dir_name(asset_id)
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning(
                "Scratch cleanup incomplete",
                extra={"asset_id": asset_id, "stage": "cleanup"},
            )
