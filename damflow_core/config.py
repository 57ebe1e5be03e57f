import os
import shutil
import tempfile
from dataclasses import dataclass
from functools import lru_cache

from damflow_core.storage.paths import has_uri_scheme


@dataclass(frozen=True)
class Config:
    env: str
    log_level: str
    storage_root: str
    public_url_base: str | None
    database_path: str
    scratch_dir: str
    max_raw_bytes: int
    ffmpeg_bin: str | None
    ffprobe_bin: str | None
    ffmpeg_timeout_s: float
    ingest_workers: int
    thumbnail_max_edge: int
    thumbnail_jpeg_quality: int
    scrub_frame_count: int
    scrub_frame_width: int
    video_thumbnail_position: float
    openai_api_key: str | None
    openai_base_url: str | None
    vision_model_name: str
    expansion_model_name: str
    embedding_model_name: str
    transcribe_model_name: str
    model_timeout_s: float
    model_max_retries: int
    model_calls_per_min: int
    transcribe_max_bytes: int
    pdf_text_chars: int
    transcript_excerpt_chars: int
    embedding_text_chars: int
    query_expansion_ttl_seconds: int
    search_fallback_limit: int
    vector_match_distance: float
    related_max_distance: float
    trash_retention_days: int

    def public_url_for(self, key: str) -> str | None:
        if not self.public_url_base:
            return None
        return f"{self.public_url_base.rstrip('/')}/{key.lstrip('/')}"

    @classmethod
    def from_env(cls) -> "Config":
        missing: list[str] = []

        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or value == "":
                missing.append(name)
                return ""
            return value

        def require_int(name: str) -> int:
            value = require(name)
            if not value:
                return 0
            try:
                return int(value)
            except ValueError as exc:
                raise ValueError(f"{name} must be an integer") from exc

        env = require("ENV")
        log_level = require("LOG_LEVEL")
        storage_root = require("STORAGE_ROOT")
        database_path = require("DATABASE_PATH")
        max_raw_bytes = require_int("MAX_RAW_BYTES")
        public_url_base = os.getenv("PUBLIC_URL_BASE") or None
        if public_url_base and not has_uri_scheme(public_url_base):
            raise ValueError(
                "PUBLIC_URL_BASE must include a URI scheme "
                "(example: https://cdn.example.com/assets)"
            )
        scratch_dir = os.getenv("SCRATCH_DIR", "").strip() or _default_scratch_dir()

        ffmpeg_bin = os.getenv("FFMPEG_BIN") or shutil.which("ffmpeg")
        ffprobe_bin = os.getenv("FFPROBE_BIN") or shutil.which("ffprobe")
        ffmpeg_timeout_s = _parse_float(os.getenv("FFMPEG_TIMEOUT_S", "120"))
        ingest_workers = int(os.getenv("INGEST_WORKERS", "0")) or (os.cpu_count() or 1)

        thumbnail_max_edge = int(os.getenv("THUMBNAIL_MAX_EDGE", "400"))
        thumbnail_jpeg_quality = min(
            100, max(1, int(os.getenv("THUMBNAIL_JPEG_QUALITY", "80")))
        )
        scrub_frame_count = int(os.getenv("SCRUB_FRAME_COUNT", "10"))
        scrub_frame_width = int(os.getenv("SCRUB_FRAME_WIDTH", "320"))
        video_thumbnail_position = _parse_float(
            os.getenv("VIDEO_THUMBNAIL_POSITION", "0.2")
        )
        if not 0.0 <= video_thumbnail_position <= 1.0:
            raise ValueError("VIDEO_THUMBNAIL_POSITION must be between 0 and 1")
        if scrub_frame_count <= 0:
            raise ValueError("SCRUB_FRAME_COUNT must be positive")

        openai_api_key = os.getenv("OPENAI_API_KEY") or None
        openai_base_url = os.getenv("OPENAI_BASE_URL") or None
        vision_model_name = os.getenv("VISION_MODEL_NAME", "gpt-4o-mini")
        expansion_model_name = os.getenv("EXPANSION_MODEL_NAME", "gpt-4o-mini")
        embedding_model_name = os.getenv(
            "EMBEDDING_MODEL_NAME", "text-embedding-3-small"
        )
        transcribe_model_name = os.getenv("TRANSCRIBE_MODEL_NAME", "whisper-1")
        model_timeout_s = _parse_float(os.getenv("MODEL_TIMEOUT_S", "90"))
        model_max_retries = max(0, int(os.getenv("MODEL_MAX_RETRIES", "2")))
        model_calls_per_min = int(os.getenv("MODEL_CALLS_PER_MIN", "60"))
        transcribe_max_bytes = int(
            os.getenv("TRANSCRIBE_MAX_BYTES", str(25 * 1024 * 1024))
        )
        pdf_text_chars = int(os.getenv("PDF_TEXT_CHARS", "12000"))
        transcript_excerpt_chars = int(os.getenv("TRANSCRIPT_EXCERPT_CHARS", "2000"))
        embedding_text_chars = int(os.getenv("EMBEDDING_TEXT_CHARS", "8000"))
        query_expansion_ttl_seconds = int(
            os.getenv("QUERY_EXPANSION_TTL_SECONDS", str(24 * 60 * 60))
        )
        search_fallback_limit = int(os.getenv("SEARCH_FALLBACK_LIMIT", "20"))
        vector_match_distance = _parse_float(os.getenv("VECTOR_MATCH_DISTANCE", "0.45"))
        related_max_distance = _parse_float(os.getenv("RELATED_MAX_DISTANCE", "0.60"))
        trash_retention_days = int(os.getenv("TRASH_RETENTION_DAYS", "30"))

        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required env vars: {missing_str}")

        return cls(
            env=env,
            log_level=log_level,
            storage_root=storage_root,
            public_url_base=public_url_base,
            database_path=database_path,
            scratch_dir=scratch_dir,
            max_raw_bytes=max_raw_bytes,
            ffmpeg_bin=ffmpeg_bin,
            ffprobe_bin=ffprobe_bin,
            ffmpeg_timeout_s=ffmpeg_timeout_s,
            ingest_workers=ingest_workers,
            thumbnail_max_edge=thumbnail_max_edge,
            thumbnail_jpeg_quality=thumbnail_jpeg_quality,
            scrub_frame_count=scrub_frame_count,
            scrub_frame_width=scrub_frame_width,
            video_thumbnail_position=video_thumbnail_position,
            openai_api_key=openai_api_key,
            openai_base_url=openai_base_url,
            vision_model_name=vision_model_name,
            expansion_model_name=expansion_model_name,
            embedding_model_name=embedding_model_name,
            transcribe_model_name=transcribe_model_name,
            model_timeout_s=model_timeout_s,
            model_max_retries=model_max_retries,
            model_calls_per_min=model_calls_per_min,
            transcribe_max_bytes=transcribe_max_bytes,
            pdf_text_chars=pdf_text_chars,
            transcript_excerpt_chars=transcript_excerpt_chars,
            embedding_text_chars=embedding_text_chars,
            query_expansion_ttl_seconds=query_expansion_ttl_seconds,
            search_fallback_limit=search_fallback_limit,
            vector_match_distance=vector_match_distance,
            related_max_distance=related_max_distance,
            trash_retention_days=trash_retention_days,
        )


def _default_scratch_dir() -> str:
    return os.path.join(tempfile.gettempdir(), "damflow-scratch")


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
