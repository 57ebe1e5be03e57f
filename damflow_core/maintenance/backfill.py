from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from damflow_core.assets.store import SqliteAssetStore
from damflow_core.assets.types import Asset, IngestRequest, MediaFamily, Specificity
from damflow_core.config import Config
from damflow_core.ingestion.coordinator import IngestCoordinator, PipelineOutcome
from damflow_core.ingestion.scratch import scratch_dir_name
from damflow_core.logging import get_logger
from damflow_core.storage.object_store import ObjectStore

logger = get_logger(__name__)

BACKFILL_STAGES = ("derivatives", "enrichment", "all")

_DERIVATIVE_FAMILIES = {MediaFamily.IMAGE, MediaFamily.ANIMATION, MediaFamily.VIDEO}


@dataclass
class BackfillReport:
    stage: str
    candidates: int = 0
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    outcomes: list[PipelineOutcome] = field(default_factory=list)
    duration_ms: float = 0.0


def needs_derivatives(asset: Asset) -> bool:
    if asset.family not in _DERIVATIVE_FAMILIES:
        return False
    if not asset.thumbnail_path:
        return True
    return asset.family == MediaFamily.VIDEO and not asset.preview_frames


def plan_stages(asset: Asset, stage: str) -> tuple[str, ...]:
    """Pick the pipeline stages an asset still needs for a backfill pass."""
    stages: list[str] = []
    if stage in {"derivatives", "all"} and needs_derivatives(asset):
        stages.append("derivatives")
    if stage in {"enrichment", "all"}:
        if asset.ai_data is None:
            stages.extend(["enrichment", "index"])
        elif not asset.embedding:
            stages.append("index")
    return tuple(stages)


class BackfillRunner:
    """Re-run missing stages for existing assets through a bounded pool.

    Model calls share the client's rate limiter, so a large backlog queues
    instead of bursting past the provider quota.
    """

    def __init__(
        self,
        config: Config,
        store: SqliteAssetStore,
        object_store: ObjectStore,
        coordinator: IngestCoordinator,
        *,
        workers: int = 2,
    ) -> None:
        self.config = config
        self.store = store
        self.object_store = object_store
        self.coordinator = coordinator
        self.workers = max(1, workers)

    def find(self, stage: str, *, limit: int | None = None) -> list[Asset]:
        if stage not in BACKFILL_STAGES:
            raise ValueError(f"Unsupported backfill stage: {stage}")
        return self.store.find_for_backfill(
            missing_derivatives=stage in {"derivatives", "all"},
            failed_enrichment=stage in {"enrichment", "all"},
            limit=limit,
        )

    def run(
        self,
        stage: str = "all",
        *,
        limit: int | None = None,
        creativity: float | None = None,
        specificity: Specificity = Specificity.GENERAL,
    ) -> BackfillReport:
        started = time.monotonic()
        assets = self.find(stage, limit=limit)
        report = BackfillReport(stage=stage, candidates=len(assets))
        logger.info(
            "Backfill started",
            extra={"stage": f"backfill-{stage}", "result_count": len(assets)},
        )
        with ThreadPoolExecutor(
            max_workers=self.workers,
            thread_name_prefix="damflow-backfill",
        ) as pool:
            futures = {
                asset.id: pool.submit(
                    self._process,
                    asset,
                    plan_stages(asset, stage),
                    creativity,
                    specificity,
                )
                for asset in assets
            }
            for asset_id, future in futures.items():
                try:
                    outcome = future.result()
                except Exception as exc:
                    report.failed[asset_id] = f"{type(exc).__name__}: {exc}"
                    logger.warning(
                        "Backfill failed for asset",
                        extra={
                            "asset_id": asset_id,
                            "stage": f"backfill-{stage}",
                            "error_message": str(exc),
                        },
                    )
                    continue
                if outcome is None:
                    report.skipped[asset_id] = "nothing to do"
                    continue
                report.outcomes.append(outcome)
                errors = [event.error for event in outcome.events if event.error]
                if outcome.skipped_reason:
                    report.skipped[asset_id] = outcome.skipped_reason
                elif errors:
                    report.failed[asset_id] = "; ".join(errors)
                else:
                    report.completed.append(asset_id)
        report.duration_ms = round((time.monotonic() - started) * 1000.0, 2)
        logger.info(
            "Backfill finished",
            extra={
                "stage": f"backfill-{stage}",
                "result_count": len(report.completed),
                "duration_ms": report.duration_ms,
            },
        )
        return report

    def _process(
        self,
        asset: Asset,
        stages: tuple[str, ...],
        creativity: float | None,
        specificity: Specificity,
    ) -> PipelineOutcome | None:
        if not stages:
            return None
        if stages == ("index",):
            # Indexing reads stored enrichment; the primary is not needed.
            request = IngestRequest(
                asset_id=asset.id,
                local_path="",
                mime_type=asset.mime_type,
            )
            return self.coordinator.run_pipeline(request, stages)
        local_path = self._download(asset)
        request = IngestRequest(
            asset_id=asset.id,
            local_path=local_path,
            mime_type=asset.mime_type,
            creativity=creativity,
            specificity=specificity,
            owns_local_file=True,
        )
        return self.coordinator.run_pipeline(request, stages)

    def _download(self, asset: Asset) -> str:
        target_dir = Path(self.config.scratch_dir) / "backfill"
        target_dir.mkdir(parents=True, exist_ok=True)
        suffix = PurePosixPath(asset.filename).suffix
        target = target_dir / f"{scratch_dir_name(asset.id)}{suffix}"
        size = self.object_store.fetch(
            asset.path,
            str(target),
            max_bytes=self.config.max_raw_bytes or None,
        )
        logger.info(
            "Backfill primary downloaded",
            extra={"asset_id": asset.id, "stage": "download", "result_count": size},
        )
        return str(target)
