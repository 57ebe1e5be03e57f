from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class IngestState(str, Enum):
    STORED = "STORED"
    DERIVATIVES_DONE = "DERIVATIVES_DONE"
    DERIVATIVES_SKIPPED = "DERIVATIVES_SKIPPED"
    ENRICHED = "ENRICHED"
    ENRICHMENT_FAILED = "ENRICHMENT_FAILED"
    INDEXED = "INDEXED"
    INDEX_SKIPPED = "INDEX_SKIPPED"


class Specificity(str, Enum):
    GENERAL = "general"
    HIGH = "high"

    @classmethod
    def parse(cls, value: str | None) -> "Specificity":
        if not value:
            return cls.GENERAL
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported specificity: {value}") from exc


class MediaFamily(str, Enum):
    IMAGE = "image"
    ANIMATION = "animation"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"


_ANIMATED_IMAGE_TYPES = {"image/gif"}


def media_family(mime_type: str | None) -> MediaFamily:
    normalized = (mime_type or "").split(";", 1)[0].strip().lower()
    if normalized in _ANIMATED_IMAGE_TYPES:
        return MediaFamily.ANIMATION
    if normalized.startswith("image/"):
        return MediaFamily.IMAGE
    if normalized.startswith("video/"):
        return MediaFamily.VIDEO
    if normalized.startswith("audio/"):
        return MediaFamily.AUDIO
    if normalized == "application/pdf":
        return MediaFamily.DOCUMENT
    return MediaFamily.OTHER


# Known enrichment keys; anything else round-trips through AiData.extra.
_AI_FIELD_KEYS = {
    "tags": "tags",
    "description": "description",
    "colors": "colors",
    "educationalContext": "educational_context",
    "transcript": "transcript",
    "assetType": "asset_type",
    "storylineUseCase": "storyline_use_case",
    "instructionalApproach": "instructional_approach",
    "topic": "topic",
    "isVideoAnalysis": "is_video_analysis",
}


@dataclass(frozen=True)
class AiData:
    tags: list[str] = field(default_factory=list)
    description: str | None = None
    colors: list[str] = field(default_factory=list)
    educational_context: str | None = None
    transcript: str | None = None
    asset_type: str | None = None
    storyline_use_case: str | None = None
    instructional_approach: str | None = None
    topic: str | None = None
    is_video_analysis: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "AiData":
        payload = dict(payload or {})
        values: dict[str, Any] = {}
        for key, attr in _AI_FIELD_KEYS.items():
            if key in payload:
                values[attr] = payload.pop(key)
        tags = values.get("tags")
        values["tags"] = [str(tag) for tag in tags] if isinstance(tags, list) else []
        colors = values.get("colors")
        values["colors"] = (
            [str(color) for color in colors] if isinstance(colors, list) else []
        )
        for attr in (
            "description",
            "educational_context",
            "transcript",
            "asset_type",
            "storyline_use_case",
            "instructional_approach",
            "topic",
        ):
            value = values.get(attr)
            if value is not None and not isinstance(value, str):
                values[attr] = str(value)
        if "is_video_analysis" in values:
            values["is_video_analysis"] = bool(values["is_video_analysis"])
        return cls(extra=payload, **values)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload["tags"] = list(self.tags)
        payload["colors"] = list(self.colors)
        for key, attr in _AI_FIELD_KEYS.items():
            if attr in {"tags", "colors"}:
                continue
            value = getattr(self, attr)
            if value is not None:
                payload[key] = value
        return payload

    def with_updates(self, **changes: Any) -> "AiData":
        return replace(self, **changes)


@dataclass(frozen=True)
class Asset:
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    path: str
    created_at: datetime
    uploaded_by: str | None = None
    thumbnail_path: str | None = None
    preview_frames: list[str] = field(default_factory=list)
    ai_data: AiData | None = None
    embedding: list[float] | None = None
    deleted_at: datetime | None = None
    ingest_state: IngestState = IngestState.STORED
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None

    @property
    def family(self) -> MediaFamily:
        return media_family(self.mime_type)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def cover_url(self) -> str:
        return self.thumbnail_path or self.path

    def enrichment_text(self) -> str:
        if self.ai_data is None:
            return ""
        data = self.ai_data
        parts = list(data.tags) + list(data.colors)
        for value in (
            data.description,
            data.educational_context,
            data.storyline_use_case,
            data.instructional_approach,
            data.topic,
            data.transcript,
        ):
            if value:
                parts.append(value)
        return " ".join(parts).lower()


@dataclass(frozen=True)
class IngestRequest:
    asset_id: str
    local_path: str
    mime_type: str
    creativity: float | None = None
    specificity: Specificity = Specificity.GENERAL
    owns_local_file: bool = False

    def __post_init__(self) -> None:
        if self.creativity is not None and not 0.0 <= self.creativity <= 1.0:
            raise ValueError("creativity must be between 0 and 1")
