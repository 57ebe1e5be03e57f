from __future__ import annotations

import mimetypes
import os
import shutil
import uuid
from datetime import datetime
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from damflow_core.assets.types import Asset, IngestRequest, Specificity
from damflow_core.config import get_config
from damflow_core.errors import DamflowError, NotFoundError, ValidationError
from damflow_core.logging import configure_logging, get_logger
from damflow_core.runtime import Runtime, build_runtime
from damflow_core.services.fastapi_scaffolding import (
    HealthResponse,
    build_health_response,
    install_api_middleware,
)

SERVICE_NAME = "damflow-local-api"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV", "local"),
    version=os.getenv("DAMFLOW_VERSION"),
)
logger = get_logger(__name__)

app = FastAPI()
install_api_middleware(app)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AssetModel(ApiModel):
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    path: str
    cover_url: str
    thumbnail_path: str | None = None
    preview_frames: list[str] = []
    ai_data: dict[str, Any] | None = None
    created_at: datetime
    deleted_at: datetime | None = None
    uploaded_by: str | None = None
    ingest_state: str
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None
    has_embedding: bool = False

    @classmethod
    def from_asset(cls, asset: Asset) -> "AssetModel":
        return cls(
            id=asset.id,
            filename=asset.filename,
            original_name=asset.original_name,
            mime_type=asset.mime_type,
            size=asset.size,
            path=asset.path,
            cover_url=asset.cover_url,
            thumbnail_path=asset.thumbnail_path,
            preview_frames=list(asset.preview_frames),
            ai_data=asset.ai_data.to_dict() if asset.ai_data else None,
            created_at=asset.created_at,
            deleted_at=asset.deleted_at,
            uploaded_by=asset.uploaded_by,
            ingest_state=asset.ingest_state.value,
            width=asset.width,
            height=asset.height,
            duration_seconds=asset.duration_seconds,
            has_embedding=bool(asset.embedding),
        )


class SearchResultsModel(ApiModel):
    results: list[AssetModel]
    is_fallback: bool = False


class TrashPageModel(ApiModel):
    assets: list[AssetModel]
    total: int
    page: int
    page_size: int
    total_pages: int


class PurgeModel(ApiModel):
    purged: list[str]
    file_errors: list[str] = []


class ClickRequest(ApiModel):
    query: str | None = None
    position: int | None = None
    user_id: str | None = None


class RenameRequest(ApiModel):
    original_name: str


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime(get_config())


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DamflowError)
async def _damflow_error(request: Request, exc: DamflowError) -> JSONResponse:
    logger.error(
        "Request failed",
        extra={
            "request_id": getattr(request.state, "correlation_id", None),
            "error_code": type(exc).__name__,
            "error_message": str(exc),
        },
    )
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return build_health_response(SERVICE_NAME)


def _parse_creativity(value: str | None) -> float | None:
    if value is None or value.strip() == "":
        return None
    try:
        creativity = float(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail="creativity must be a number"
        ) from exc
    if not 0.0 <= creativity <= 1.0:
        raise HTTPException(
            status_code=400, detail="creativity must be between 0 and 1"
        )
    return creativity


def _parse_specificity(value: str | None) -> Specificity:
    try:
        return Specificity.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _spool_upload(upload: UploadFile, scratch_dir: str) -> str:
    target_dir = Path(scratch_dir) / "uploads"
    target_dir.mkdir(parents=True, exist_ok=True)
    suffix = PurePosixPath(upload.filename or "").suffix.lower()
    target = target_dir / f"{uuid.uuid4().hex}{suffix}"
    with open(target, "wb") as handle:
        shutil.copyfileobj(upload.file, handle)
    return str(target)


@app.post("/assets", response_model=AssetModel, status_code=201)
def upload_asset(
    request: Request,
    file: UploadFile = File(...),
    original_name: str | None = Form(None, alias="originalName"),
    creativity: str | None = Form(None),
    specificity: str | None = Form(None),
    uploaded_by: str | None = Form(None, alias="uploadedBy"),
    runtime: Runtime = Depends(get_runtime),
) -> AssetModel:
    creativity_value = _parse_creativity(creativity)
    specificity_value = _parse_specificity(specificity)
    name = original_name or file.filename or ""
    mime_type = (
        file.content_type
        if file.content_type and file.content_type != "application/octet-stream"
        else mimetypes.guess_type(name)[0] or "application/octet-stream"
    )

    local_path = _spool_upload(file, runtime.config.scratch_dir)
    try:
        asset = runtime.coordinator.store_upload(
            local_path,
            original_name=name,
            mime_type=mime_type,
            uploaded_by=uploaded_by,
        )
    except Exception:
        Path(local_path).unlink(missing_ok=True)
        raise

    runtime.coordinator.submit(
        IngestRequest(
            asset_id=asset.id,
            local_path=local_path,
            mime_type=mime_type,
            creativity=creativity_value,
            specificity=specificity_value,
            owns_local_file=True,
        )
    )
    logger.info(
        "Upload accepted",
        extra={
            "request_id": getattr(request.state, "correlation_id", None),
            "asset_id": asset.id,
            "mime_type": mime_type,
        },
    )
    return AssetModel.from_asset(asset)


@app.get("/assets", response_model=SearchResultsModel)
def list_assets(
    search: str | None = None,
    asset_type: str | None = Query(None, alias="type"),
    color: str | None = None,
    user_id: str | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> SearchResultsModel:
    response = runtime.search.search(
        search,
        asset_type=asset_type,
        color=color,
        user_id=user_id,
    )
    return SearchResultsModel(
        results=[AssetModel.from_asset(asset) for asset in response.results],
        is_fallback=response.is_fallback,
    )


@app.get("/assets/{asset_id}", response_model=AssetModel)
def get_asset(asset_id: str, runtime: Runtime = Depends(get_runtime)) -> AssetModel:
    asset = runtime.store.require(asset_id)
    if asset.is_deleted:
        raise NotFoundError(f"Asset not found: {asset_id}")
    return AssetModel.from_asset(asset)


@app.patch("/assets/{asset_id}", response_model=AssetModel)
def rename_asset(
    asset_id: str,
    payload: RenameRequest,
    runtime: Runtime = Depends(get_runtime),
) -> AssetModel:
    return AssetModel.from_asset(runtime.store.rename(asset_id, payload.original_name))


@app.get("/assets/{asset_id}/related", response_model=list[AssetModel])
def related_assets(
    asset_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> list[AssetModel]:
    return [AssetModel.from_asset(asset) for asset in runtime.search.related(asset_id)]


@app.post("/assets/{asset_id}/click", status_code=204)
def track_click(
    asset_id: str,
    payload: ClickRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> None:
    payload = payload or ClickRequest()
    runtime.search.track_click(
        asset_id,
        query=payload.query,
        position=payload.position,
        user_id=payload.user_id,
    )


@app.delete("/assets/{asset_id}", status_code=204)
def delete_asset(asset_id: str, runtime: Runtime = Depends(get_runtime)) -> None:
    runtime.trash.soft_delete(asset_id)


@app.post("/assets/{asset_id}/restore", response_model=AssetModel)
def restore_asset(asset_id: str, runtime: Runtime = Depends(get_runtime)) -> AssetModel:
    return AssetModel.from_asset(runtime.trash.restore(asset_id))


@app.delete("/assets/{asset_id}/force", response_model=PurgeModel)
def purge_asset(asset_id: str, runtime: Runtime = Depends(get_runtime)) -> PurgeModel:
    report = runtime.trash.purge_asset(asset_id)
    return PurgeModel(purged=report.purged, file_errors=report.file_errors)


@app.get("/trash", response_model=TrashPageModel)
def list_trash(
    page: int = 1,
    page_size: int = 15,
    runtime: Runtime = Depends(get_runtime),
) -> TrashPageModel:
    trash = runtime.trash.list_trash(page=page, page_size=page_size)
    return TrashPageModel(
        assets=[AssetModel.from_asset(asset) for asset in trash.assets],
        total=trash.total,
        page=trash.page,
        page_size=trash.page_size,
        total_pages=trash.total_pages,
    )


@app.delete("/trash", response_model=PurgeModel)
def empty_trash(runtime: Runtime = Depends(get_runtime)) -> PurgeModel:
    report = runtime.trash.empty_trash()
    return PurgeModel(purged=report.purged, file_errors=report.file_errors)
