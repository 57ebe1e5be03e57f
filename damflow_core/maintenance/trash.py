from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from damflow_core.assets.store import SqliteAssetStore, TrashPage
from damflow_core.assets.types import Asset
from damflow_core.config import Config
from damflow_core.logging import get_logger
from damflow_core.storage.object_store import ObjectStore

logger = get_logger(__name__)


@dataclass
class PurgeReport:
    purged: list[str] = field(default_factory=list)
    file_errors: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.purged)


def stored_urls(asset: Asset) -> list[str]:
    urls = [asset.path]
    if asset.thumbnail_path:
        urls.append(asset.thumbnail_path)
    urls.extend(asset.preview_frames)
    return list(dict.fromkeys(url for url in urls if url))


class TrashService:
    def __init__(
        self,
        config: Config,
        store: SqliteAssetStore,
        object_store: ObjectStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.object_store = object_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def soft_delete(self, asset_id: str) -> None:
        self.store.soft_delete(asset_id, now=self._clock())
        logger.info(
            "Asset moved to trash",
            extra={"asset_id": asset_id, "stage": "trash", "status": "deleted"},
        )

    def restore(self, asset_id: str) -> Asset:
        asset = self.store.restore(asset_id)
        logger.info(
            "Asset restored",
            extra={"asset_id": asset_id, "stage": "trash", "status": "restored"},
        )
        return asset

    def list_trash(self, *, page: int = 1, page_size: int = 15) -> TrashPage:
        return self.store.list_trash(page=page, page_size=page_size)

    def purge_asset(self, asset_id: str) -> PurgeReport:
        """Permanently remove one asset, active or trashed."""
        asset = self.store.require(asset_id)
        report = PurgeReport()
        self._purge(asset, report)
        return report

    def empty_trash(self) -> PurgeReport:
        report = PurgeReport()
        for asset in self.store.trashed():
            self._purge(asset, report)
        logger.info(
            "Trash emptied",
            extra={"stage": "trash", "result_count": report.count},
        )
        return report

    def purge_expired(self, now: datetime | None = None) -> PurgeReport:
        cutoff = (now or self._clock()) - timedelta(
            days=self.config.trash_retention_days
        )
        report = PurgeReport()
        for asset in self.store.trashed(deleted_before=cutoff):
            self._purge(asset, report)
        logger.info(
            "Expired trash purged",
            extra={"stage": "trash", "result_count": report.count},
        )
        return report

    def _purge(self, asset: Asset, report: PurgeReport) -> None:
        for url in stored_urls(asset):
            try:
                self.object_store.delete(url)
            except FileNotFoundError:
                continue
            except Exception as exc:
                # Files are best effort; the row goes regardless.
                report.file_errors.append(f"{url}: {exc}")
                logger.warning(
                    "Failed to delete stored file",
                    extra={
                        "asset_id": asset.id,
                        "stage": "trash",
                        "error_message": str(exc),
                    },
                )
        self.store.purge(asset.id)
        report.purged.append(asset.id)
        logger.info(
            "Asset purged",
            extra={"asset_id": asset.id, "stage": "trash", "status": "purged"},
        )
