from __future__ import annotations

import os
import re
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable

from damflow_core.assets.store import SqliteAssetStore
from damflow_core.assets.types import (
    AiData,
    Asset,
    IngestRequest,
    IngestState,
    MediaFamily,
    media_family,
)
from damflow_core.config import Config
from damflow_core.enrichment.analysis import AnalysisEngine, AnalysisInput
from damflow_core.errors import RecoverableError, ValidationError
from damflow_core.indexing.embeddings import EmbeddingIndexer
from damflow_core.ingestion.derivatives import (
    Derivative,
    DerivativeSet,
    generate_derivatives,
)
from damflow_core.ingestion.media import MediaInfo, probe
from damflow_core.ingestion.metrics import StageEvent, StageTimer
from damflow_core.ingestion.scratch import asset_scratch
from damflow_core.logging import get_logger
from damflow_core.storage.object_store import ObjectStore
from damflow_core.storage.paths import original_key, preview_key, thumbnail_key

logger = get_logger(__name__)

EventSink = Callable[[StageEvent], None]

_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,10}$")
_THUMBNAIL_FAMILIES = {MediaFamily.IMAGE, MediaFamily.ANIMATION, MediaFamily.VIDEO}

PIPELINE_STAGES = ("derivatives", "enrichment", "index")
FULL_RUN = frozenset(PIPELINE_STAGES)

_STATE_RANKS = {
    IngestState.STORED: 0,
    IngestState.DERIVATIVES_SKIPPED: 1,
    IngestState.DERIVATIVES_DONE: 1,
    IngestState.ENRICHMENT_FAILED: 2,
    IngestState.ENRICHED: 2,
    IngestState.INDEX_SKIPPED: 3,
    IngestState.INDEXED: 3,
}


def state_rank(state: IngestState) -> int:
    return _STATE_RANKS[state]


def validate_stages(stages: Iterable[str]) -> frozenset[str]:
    selected = frozenset(stages)
    unknown = selected - FULL_RUN
    if unknown:
        raise ValidationError(f"Unknown pipeline stages: {sorted(unknown)}")
    if not selected:
        raise ValidationError("At least one pipeline stage is required")
    return selected


def unique_filename(original_name: str) -> str:
    suffix = PurePosixPath(original_name.replace("\\", "/")).suffix.lower()
    if not _EXTENSION_RE.match(suffix):
        suffix = ""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{suffix}"


@dataclass
class PipelineOutcome:
    asset_id: str
    state: IngestState | None = None
    events: list[StageEvent] = field(default_factory=list)
    skipped_reason: str | None = None
    timings: dict[str, float] = field(default_factory=dict)

    def stage(self, name: str) -> StageEvent | None:
        for event in self.events:
            if event.stage == name:
                return event
        return None


@dataclass(frozen=True)
class _UploadedDerivatives:
    thumbnail_url: str | None
    preview_urls: list[str]
    errors: list[str]


@dataclass
class _PipelineRun:
    asset: Asset
    request: IngestRequest
    outcome: PipelineOutcome
    timer: StageTimer
    scratch: str
    baseline: IngestState | None


class IngestCoordinator:
    def __init__(
        self,
        config: Config,
        store: SqliteAssetStore,
        object_store: ObjectStore,
        analyzer: AnalysisEngine,
        indexer: EmbeddingIndexer,
        *,
        event_sink: EventSink | None = None,
        storage_attempts: int = 3,
        retry_backoff_s: float = 0.5,
        upload_workers: int = 4,
    ) -> None:
        self.config = config
        self.store = store
        self.object_store = object_store
        self.analyzer = analyzer
        self.indexer = indexer
        self.event_sink = event_sink
        self.storage_attempts = max(1, storage_attempts)
        self.retry_backoff_s = retry_backoff_s
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.ingest_workers),
            thread_name_prefix="damflow-ingest",
        )
        self._upload_pool = ThreadPoolExecutor(
            max_workers=max(1, upload_workers),
            thread_name_prefix="damflow-upload",
        )

    def store_upload(
        self,
        local_path: str,
        *,
        original_name: str,
        mime_type: str,
        uploaded_by: str | None = None,
    ) -> Asset:
        """Write the primary file and create the asset row.

        This is the only step whose failure is surfaced to the uploader.
        """
        name = original_name.strip()
        if not name:
            raise ValidationError("original_name is required")
        if not mime_type:
            raise ValidationError("mime_type is required")
        size = os.path.getsize(local_path)
        if self.config.max_raw_bytes and size > self.config.max_raw_bytes:
            raise ValidationError(
                f"Upload of {size} bytes exceeds MAX_RAW_BYTES "
                f"({self.config.max_raw_bytes})"
            )

        filename = unique_filename(name)
        key = original_key(filename)
        url = self._put_with_retry(local_path, key, mime_type)
        asset = Asset(
            id=str(uuid.uuid4()),
            filename=filename,
            original_name=name,
            mime_type=mime_type,
            size=size,
            path=url,
            created_at=datetime.now(timezone.utc),
            uploaded_by=uploaded_by,
            ingest_state=IngestState.STORED,
        )
        try:
            self.store.create(asset)
        except Exception:
            self._delete_quietly(url, asset_id=asset.id)
            raise
        logger.info(
            "Asset stored",
            extra={
                "asset_id": asset.id,
                "stage": "store",
                "status": IngestState.STORED.value,
                "mime_type": mime_type,
            },
        )
        return asset

    def submit(self, request: IngestRequest) -> Future[PipelineOutcome]:
        return self._executor.submit(self.run_pipeline, request)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._upload_pool.shutdown(wait=wait)

    def run_pipeline(
        self,
        request: IngestRequest,
        stages: Iterable[str] = PIPELINE_STAGES,
    ) -> PipelineOutcome:
        """Run the selected stages for one asset; never raises."""
        outcome = PipelineOutcome(asset_id=request.asset_id)
        timer = StageTimer()
        try:
            selected = validate_stages(stages)
            self._run_stages(request, selected, outcome, timer)
        except Exception as exc:
            logger.exception(
                "Ingest pipeline aborted",
                extra={
                    "asset_id": request.asset_id,
                    "error_code": type(exc).__name__,
                    "error_message": str(exc),
                },
            )
            outcome.skipped_reason = f"pipeline error: {exc}"
        finally:
            if request.owns_local_file:
                Path(request.local_path).unlink(missing_ok=True)
        outcome.timings = timer.summary()
        logger.info(
            "Ingest pipeline finished",
            extra={
                "asset_id": request.asset_id,
                "status": outcome.state.value if outcome.state else None,
                "timings": outcome.timings,
            },
        )
        return outcome

    def _run_stages(
        self,
        request: IngestRequest,
        selected: frozenset[str],
        outcome: PipelineOutcome,
        timer: StageTimer,
    ) -> None:
        asset = self.store.get(request.asset_id)
        if asset is None:
            outcome.skipped_reason = "asset not found"
            return
        outcome.state = asset.ingest_state
        run = _PipelineRun(
            asset=asset,
            request=request,
            outcome=outcome,
            timer=timer,
            scratch="",
            baseline=asset.ingest_state if selected != FULL_RUN else None,
        )
        with asset_scratch(self.config.scratch_dir, asset.id) as scratch:
            run.scratch = str(scratch)
            info = MediaInfo()
            if "derivatives" in selected:
                if not self._still_active(run, "derivatives"):
                    return
                info = self._derivative_stage(run)

            ai_data: AiData | None = None
            if "enrichment" in selected:
                if not self._still_active(run, "enrichment"):
                    return
                if "derivatives" not in selected:
                    info = probe(request.local_path, request.mime_type, self.config)
                ai_data = self._enrichment_stage(run, info)
                if ai_data is None:
                    return
            elif "index" in selected:
                ai_data = asset.ai_data

            if ai_data is None:
                return
            if "index" not in selected or not self.store.is_active(asset.id):
                # Keep the paid-for analysis; skip the embedding call.
                self.store.update_enrichment(asset.id, ai_data)
                if "index" in selected:
                    outcome.skipped_reason = "asset deleted before index"
                return
            self._index_stage(run, ai_data)

    def _still_active(self, run: _PipelineRun, stage: str) -> bool:
        if self.store.is_active(run.asset.id):
            return True
        run.outcome.skipped_reason = f"asset deleted before {stage}"
        logger.info(
            "Skipping stage for deleted asset",
            extra={"asset_id": run.asset.id, "stage": stage, "status": "skipped"},
        )
        return False

    def _derivative_stage(self, run: _PipelineRun) -> MediaInfo:
        asset = run.asset
        request = run.request
        info = MediaInfo()
        errors: list[str] = []
        with run.timer.track("derivatives"):
            try:
                info = probe(request.local_path, request.mime_type, self.config)
                derivatives = generate_derivatives(
                    request.local_path,
                    request.mime_type,
                    filename=asset.filename,
                    info=info,
                    output_dir=run.scratch,
                    config=self.config,
                )
                uploaded = self._upload_derivatives(asset, derivatives)
                errors.extend(derivatives.errors)
                errors.extend(uploaded.errors)
                self.store.update_derivatives(
                    asset.id,
                    thumbnail_path=uploaded.thumbnail_url,
                    preview_frames=uploaded.preview_urls,
                    width=info.width,
                    height=info.height,
                    duration_seconds=info.duration_seconds,
                )
                if (
                    media_family(request.mime_type) in _THUMBNAIL_FAMILIES
                    and uploaded.thumbnail_url is None
                    and not errors
                ):
                    errors.append("no thumbnail produced")
            except Exception as exc:
                errors.append(f"{type(exc).__name__}: {exc}")

        if errors:
            state = IngestState.DERIVATIVES_SKIPPED
        else:
            state = IngestState.DERIVATIVES_DONE
        self._finish_stage(run, "derivatives", state, error="; ".join(errors) or None)
        return info

    def _upload_derivatives(
        self,
        asset: Asset,
        derivatives: DerivativeSet,
    ) -> _UploadedDerivatives:
        jobs: dict[str, Future[str]] = {}
        if derivatives.thumbnail is not None:
            thumb = derivatives.thumbnail
            key = thumbnail_key(asset.filename, Path(thumb.local_path).suffix)
            jobs["thumbnail"] = self._upload_pool.submit(
                self._put_with_retry, thumb.local_path, key, thumb.mime_type
            )
        for index, frame in enumerate(derivatives.preview_frames):
            jobs[f"frame-{index}"] = self._upload_pool.submit(
                self._put_derivative, frame
            )

        errors: list[str] = []
        results: dict[str, str] = {}
        for name, future in jobs.items():
            try:
                results[name] = future.result()
            except Exception as exc:
                errors.append(f"upload {name}: {exc}")

        preview_urls: list[str] = []
        if derivatives.preview_frames:
            ordered = [
                results.get(f"frame-{index}")
                for index in range(len(derivatives.preview_frames))
            ]
            # A partial strip would break the scrub index mapping.
            if all(ordered):
                preview_urls = [url for url in ordered if url]
        return _UploadedDerivatives(
            thumbnail_url=results.get("thumbnail"),
            preview_urls=preview_urls,
            errors=errors,
        )

    def _put_derivative(self, derivative: Derivative) -> str:
        key = preview_key(Path(derivative.local_path).name)
        return self._put_with_retry(derivative.local_path, key, derivative.mime_type)

    def _put_with_retry(self, source: str, key: str, mime_type: str) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.object_store.put(source, key, mime_type)
            except (OSError, RecoverableError) as exc:
                if attempt >= self.storage_attempts:
                    raise
                logger.warning(
                    "Storage put failed; retrying",
                    extra={
                        "stage": "storage",
                        "attempt_count": attempt,
                        "error_message": str(exc),
                    },
                )
                if self.retry_backoff_s > 0:
                    time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))

    def _enrichment_stage(self, run: _PipelineRun, info: MediaInfo) -> AiData | None:
        request = run.request
        ai_data: AiData | None = None
        error: str | None = None
        with run.timer.track("enrichment"):
            try:
                ai_data = self.analyzer.analyze(
                    AnalysisInput(
                        asset_id=run.asset.id,
                        local_path=request.local_path,
                        mime_type=request.mime_type,
                        info=info,
                        scratch_dir=run.scratch,
                        creativity=request.creativity,
                        specificity=request.specificity,
                    )
                )
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
        if ai_data is not None:
            state = IngestState.ENRICHED
        else:
            state = IngestState.ENRICHMENT_FAILED
        self._finish_stage(run, "enrichment", state, error=error)
        return ai_data

    def _index_stage(self, run: _PipelineRun, ai_data: AiData) -> None:
        error: str | None = None
        indexed = False
        with run.timer.track("index"):
            try:
                indexed = self.indexer.index(run.asset.id, ai_data).indexed
                if not indexed:
                    error = "embedding unavailable"
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                self.store.update_enrichment(run.asset.id, ai_data)
        state = IngestState.INDEXED if indexed else IngestState.INDEX_SKIPPED
        self._finish_stage(run, "index", state, error=error)

    def _finish_stage(
        self,
        run: _PipelineRun,
        stage: str,
        state: IngestState,
        *,
        error: str | None = None,
    ) -> None:
        asset_id = run.asset.id
        # Partial re-runs never move the recorded state backwards.
        if run.baseline is None or state_rank(state) >= state_rank(run.baseline):
            self.store.update_state(asset_id, state)
            run.outcome.state = state
        event = StageEvent(
            asset_id=asset_id,
            stage=stage,
            status=state.value,
            duration_ms=run.timer.elapsed(stage),
            error=error,
        )
        run.outcome.events.append(event)
        extra = {
            "asset_id": asset_id,
            "stage": stage,
            "status": state.value,
            "duration_ms": event.duration_ms,
            "error_message": error,
        }
        if error:
            logger.warning("Ingest stage skipped", extra=extra)
        else:
            logger.info("Ingest stage completed", extra=extra)
        if self.event_sink is not None:
            try:
                self.event_sink(event)
            except Exception:
                logger.exception(
                    "Stage event sink failed",
                    extra={"asset_id": asset_id, "stage": stage},
                )

    def _delete_quietly(self, url: str, *, asset_id: str) -> None:
        try:
            self.object_store.delete(url)
        except Exception as exc:
            logger.warning(
                "Failed to remove orphaned upload",
                extra={
                    "asset_id": asset_id,
                    "stage": "store",
                    "error_message": str(exc),
                },
            )
