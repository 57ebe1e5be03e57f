from __future__ import annotations

import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from damflow_core.logging import get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "x-correlation-id"
_OPEN_ENVS = frozenset({"dev", "local", "test"})


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: str


def cors_origins(raw: str | None = None, env: str | None = None) -> list[str]:
    """Origins from CORS_ALLOW_ORIGINS; development environments allow any."""
    value = os.getenv("CORS_ALLOW_ORIGINS", "") if raw is None else raw
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if origins:
        return origins
    current = (env or os.getenv("ENV", "dev")).lower()
    return ["*"] if current in _OPEN_ENVS else []


def correlation_id(header_value: str | None) -> str:
    return header_value or str(uuid.uuid4())


def install_api_middleware(app: FastAPI) -> None:
    origins = cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[CORRELATION_HEADER],
        )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        corr = correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = corr
        started = time.monotonic()
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = corr
        logger.info(
            "Request handled",
            extra={
                "request_id": corr,
                "status": str(response.status_code),
                "duration_ms": round((time.monotonic() - started) * 1000.0, 2),
            },
        )
        return response


def build_health_response(
    service_name: str, version: str | None = None
) -> HealthResponse:
    return HealthResponse(
        status="ok",
        service=service_name,
        version=version or os.getenv("DAMFLOW_VERSION", "dev"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )
