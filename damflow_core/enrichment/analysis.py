from __future__ import annotations

import io
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import fitz
from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from damflow_core.assets.types import AiData, MediaFamily, Specificity, media_family
from damflow_core.config import Config
from damflow_core.enrichment.client import ModelClient, image_part, text_part
from damflow_core.enrichment.prompts import (
    DOCUMENT_SYSTEM_PROMPT,
    IMAGE_SYSTEM_PROMPT,
    TAG_LIMITS,
    VIDEO_SYSTEM_PROMPT,
    audio_prompt,
    document_prompt,
    image_prompt,
    motion_prompt,
    nearest_palette_color,
    normalize_colors,
    normalize_tags,
)
from damflow_core.enrichment.transcribe import transcribe_media
from damflow_core.errors import DamflowError, PermanentError
from damflow_core.ingestion.media import MediaInfo, extract_frames_at
from damflow_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPERATURES = {
    MediaFamily.IMAGE: 0.4,
    MediaFamily.DOCUMENT: 0.2,
    MediaFamily.VIDEO: 0.3,
    MediaFamily.ANIMATION: 0.3,
    MediaFamily.AUDIO: 0.3,
}

KEYFRAME_WIDTH = 400
MODEL_IMAGE_MAX_EDGE = 2048

_KNOWN_KEYS = {
    "tags",
    "description",
    "colors",
    "educationalContext",
    "storylineUseCase",
    "instructionalApproach",
    "topic",
    "transcript",
    "assetType",
    "isVideoAnalysis",
    "frames",
}


@dataclass(frozen=True)
class AnalysisInput:
    asset_id: str
    local_path: str
    mime_type: str
    info: MediaInfo
    scratch_dir: str
    creativity: float | None = None
    specificity: Specificity = Specificity.GENERAL


def keyframe_fractions(duration_seconds: float | None) -> list[float]:
    if not duration_seconds or duration_seconds <= 0:
        return [0.0]
    if duration_seconds > 60:
        return [0.1, 0.5, 0.9]
    return [0.2, 0.8]


def flatten_frames(payload: dict[str, Any]) -> dict[str, Any]:
    frames = payload.get("frames")
    if not isinstance(frames, list):
        return payload
    flattened = {key: value for key, value in payload.items() if key != "frames"}
    tags: list[Any] = list(flattened.get("tags") or [])
    descriptions: list[str] = []
    colors: list[Any] = list(flattened.get("colors") or [])
    for frame in frames:
        if not isinstance(frame, dict):
            continue
        frame_tags = frame.get("tags")
        if isinstance(frame_tags, list):
            tags.extend(frame_tags)
        frame_colors = frame.get("colors")
        if isinstance(frame_colors, list):
            colors.extend(frame_colors)
        description = frame.get("description")
        if isinstance(description, str) and description.strip():
            descriptions.append(description.strip())
    flattened["tags"] = tags
    flattened["colors"] = colors
    if descriptions and not flattened.get("description"):
        flattened["description"] = " ".join(descriptions)
    return flattened


def dominant_palette_color(image: Image.Image) -> str:
    sample = image.convert("RGB")
    sample.thumbnail((64, 64))
    quantized = sample.quantize(colors=4)
    counts = quantized.getcolors() or []
    palette = quantized.getpalette() or []
    if not counts:
        return "Gray"
    _, index = max(counts, key=lambda item: item[0])
    rgb = tuple(palette[index * 3 : index * 3 + 3])
    if len(rgb) != 3:
        return "Gray"
    return nearest_palette_color((int(rgb[0]), int(rgb[1]), int(rgb[2])))


def _text_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(item) for item in value)
    text = str(value).strip()
    return text or None


def _load_rgb(path: str) -> Image.Image:
    try:
        with Image.open(path) as img:
            img.load()
            oriented = ImageOps.exif_transpose(img)
            if oriented is None:
                oriented = img
            return oriented.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise PermanentError(f"Unreadable image: {exc}") from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise PermanentError(f"Corrupt image data: {exc}") from exc


def _jpeg_bytes(image: Image.Image, max_edge: int = MODEL_IMAGE_MAX_EDGE) -> bytes:
    copy = image.copy()
    copy.thumbnail((max_edge, max_edge))
    buffer = io.BytesIO()
    copy.save(buffer, format="JPEG", quality=85)
    return buffer.getvalue()


def extract_pdf_text(path: str, limit: int) -> str:
    try:
        doc = fitz.open(path)
    except (RuntimeError, ValueError) as exc:
        raise PermanentError(f"Unreadable PDF: {exc}") from exc
    try:
        parts: list[str] = []
        total = 0
        for page in doc:
            text = page.get_text()
            parts.append(text)
            total += len(text)
            if total >= limit:
                break
    finally:
        doc.close()
    return "\n".join(parts)[:limit]


class AnalysisEngine:
    def __init__(self, config: Config, client: ModelClient) -> None:
        self.config = config
        self.client = client

    def analyze(self, request: AnalysisInput) -> AiData:
        family = media_family(request.mime_type)
        if family == MediaFamily.IMAGE:
            return self._analyze_image(request)
        if family == MediaFamily.DOCUMENT:
            return self._analyze_document(request)
        if family in {MediaFamily.VIDEO, MediaFamily.ANIMATION, MediaFamily.AUDIO}:
            return self._analyze_motion(request, family)
        raise PermanentError(
            f"Unsupported media type for analysis: {request.mime_type}"
        )

    def _temperature(self, request: AnalysisInput, family: MediaFamily) -> float:
        if request.creativity is None:
            return DEFAULT_TEMPERATURES[family]
        return float(request.creativity)

    def _analyze_image(self, request: AnalysisInput) -> AiData:
        image = _load_rgb(request.local_path)
        payload = self.client.complete_json(
            model=self.config.vision_model_name,
            system=IMAGE_SYSTEM_PROMPT,
            content=[
                text_part(image_prompt(request.specificity)),
                image_part(_jpeg_bytes(image)),
            ],
            temperature=self._temperature(request, MediaFamily.IMAGE),
        )
        return self._build(
            payload,
            specificity=request.specificity,
            asset_type=MediaFamily.IMAGE.value,
            color_source=image,
        )

    def _analyze_document(self, request: AnalysisInput) -> AiData:
        text = extract_pdf_text(request.local_path, self.config.pdf_text_chars)
        if not text.strip():
            raise PermanentError("PDF contains no extractable text")
        payload = self.client.complete_json(
            model=self.config.vision_model_name,
            system=DOCUMENT_SYSTEM_PROMPT,
            content=document_prompt(request.specificity, text),
            temperature=self._temperature(request, MediaFamily.DOCUMENT),
        )
        ai_data = self._build(
            payload,
            specificity=request.specificity,
            asset_type=MediaFamily.DOCUMENT.value,
            color_source=None,
        )
        if ai_data.topic is None and ai_data.educational_context:
            ai_data = ai_data.with_updates(topic=ai_data.educational_context)
        return ai_data

    def _analyze_motion(self, request: AnalysisInput, family: MediaFamily) -> AiData:
        transcript = transcribe_media(
            self.client,
            request.local_path,
            family=family,
            info=request.info,
            config=self.config,
            asset_id=request.asset_id,
        )
        excerpt = (transcript or "")[: self.config.transcript_excerpt_chars]
        frames: list[Image.Image] = []
        if family == MediaFamily.ANIMATION:
            frames = self._animation_keyframes(request.local_path)
        elif family == MediaFamily.VIDEO:
            frames = self._video_keyframes(request, has_transcript=bool(transcript))

        temperature = self._temperature(request, family)
        if frames:
            content: Any = [text_part(motion_prompt(request.specificity, excerpt))]
            content.extend(image_part(_jpeg_bytes(frame)) for frame in frames)
            payload = self.client.complete_json(
                model=self.config.vision_model_name,
                system=VIDEO_SYSTEM_PROMPT,
                content=content,
                temperature=temperature,
            )
        elif transcript:
            payload = self.client.complete_json(
                model=self.config.vision_model_name,
                system=VIDEO_SYSTEM_PROMPT,
                content=audio_prompt(request.specificity, excerpt),
                temperature=temperature,
            )
        else:
            raise PermanentError("No keyframes or transcript available for analysis")

        ai_data = self._build(
            flatten_frames(payload),
            specificity=request.specificity,
            asset_type=family.value,
            color_source=frames[0] if frames else None,
        )
        return ai_data.with_updates(
            transcript=transcript,
            is_video_analysis=family in {MediaFamily.VIDEO, MediaFamily.ANIMATION},
        )

    def _video_keyframes(
        self,
        request: AnalysisInput,
        *,
        has_transcript: bool,
    ) -> list[Image.Image]:
        duration = request.info.duration_seconds
        timestamps = [
            round((duration or 0.0) * fraction, 3)
            for fraction in keyframe_fractions(duration)
        ]
        output_dir = str(Path(request.scratch_dir) / "keyframes")
        try:
            paths = extract_frames_at(
                request.local_path,
                output_dir,
                timestamps=timestamps,
                width=KEYFRAME_WIDTH,
                name_prefix="keyframe-",
                config=self.config,
            )
        except DamflowError as exc:
            if not has_transcript:
                raise
            logger.warning(
                "Keyframe extraction failed; using transcript only",
                extra={
                    "asset_id": request.asset_id,
                    "stage": "enrichment",
                    "error_message": str(exc),
                },
            )
            return []
        return [_load_rgb(path) for path in paths]

    def _animation_keyframes(self, path: str) -> list[Image.Image]:
        try:
            with Image.open(path) as img:
                total = getattr(img, "n_frames", 1)
                duration_ms = 0
                for frame in ImageSequence.Iterator(img):
                    duration_ms += int(frame.info.get("duration", 0) or 0)
                indexes: list[int] = []
                for fraction in keyframe_fractions(duration_ms / 1000.0):
                    index = min(total - 1, int(math.floor(fraction * total)))
                    if index not in indexes:
                        indexes.append(index)
                frames: list[Image.Image] = []
                for index in indexes:
                    img.seek(index)
                    frame = img.convert("RGB")
                    frame.thumbnail((KEYFRAME_WIDTH, KEYFRAME_WIDTH))
                    frames.append(frame)
        except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
            raise PermanentError(f"Unreadable animation: {exc}") from exc
        except (OSError, SyntaxError, ValueError, EOFError) as exc:
            raise PermanentError(f"Corrupt animation data: {exc}") from exc
        return frames

    def _build(
        self,
        payload: dict[str, Any],
        *,
        specificity: Specificity,
        asset_type: str,
        color_source: Image.Image | None,
    ) -> AiData:
        _, max_tags = TAG_LIMITS[specificity]
        tags = normalize_tags(payload.get("tags"), max_tags)
        colors = normalize_colors(payload.get("colors"))
        if not colors and color_source is not None:
            colors = [dominant_palette_color(color_source)]
        extra = {
            key: value for key, value in payload.items() if key not in _KNOWN_KEYS
        }
        return AiData(
            tags=tags,
            description=_text_field(payload, "description"),
            colors=colors,
            educational_context=_text_field(payload, "educationalContext"),
            asset_type=asset_type,
            storyline_use_case=_text_field(payload, "storylineUseCase"),
            instructional_approach=_text_field(payload, "instructionalApproach"),
            topic=_text_field(payload, "topic"),
            extra=extra,
        )
