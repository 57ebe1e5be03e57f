from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from damflow_core.assets.types import MediaFamily, media_family
from damflow_core.config import Config
from damflow_core.errors import DamflowError, PermanentError
from damflow_core.ingestion.media import MediaInfo, extract_frame, extract_frames_at
from damflow_core.logging import get_logger

logger = get_logger(__name__)

JPEG_MIME = "image/jpeg"
WEBP_MIME = "image/webp"


@dataclass(frozen=True)
class Derivative:
    local_path: str
    mime_type: str


@dataclass(frozen=True)
class DerivativeSet:
    thumbnail: Derivative | None = None
    preview_frames: list[Derivative] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


def scrub_frame_index(percentage: float, frame_count: int = 10) -> int:
    if frame_count <= 0:
        raise ValueError("frame_count must be positive")
    if math.isnan(percentage):
        return 0
    index = math.floor(percentage * frame_count)
    return min(max(index, 0), frame_count - 1)


def scrub_timestamps(duration_seconds: float, frame_count: int) -> list[float]:
    step = duration_seconds / float(frame_count)
    return [round(step * (index + 0.5), 3) for index in range(frame_count)]


def generate_derivatives(
    source_path: str,
    mime_type: str,
    *,
    filename: str,
    info: MediaInfo,
    output_dir: str,
    config: Config,
) -> DerivativeSet:
    family = media_family(mime_type)
    stem = Path(filename).stem
    if family in {MediaFamily.IMAGE, MediaFamily.ANIMATION}:
        try:
            return DerivativeSet(
                thumbnail=image_thumbnail(
                    source_path,
                    output_dir=output_dir,
                    stem=stem,
                    config=config,
                )
            )
        except DamflowError as exc:
            return DerivativeSet(errors=[f"thumbnail: {exc}"])
    if family == MediaFamily.VIDEO:
        return _video_derivatives(
            source_path,
            stem=stem,
            info=info,
            output_dir=output_dir,
            config=config,
        )
    return DerivativeSet()


def image_thumbnail(
    source_path: str,
    *,
    output_dir: str,
    stem: str,
    config: Config,
) -> Derivative:
    max_edge = config.thumbnail_max_edge
    try:
        with Image.open(source_path) as img:
            if getattr(img, "n_frames", 1) > 1:
                output_path = str(Path(output_dir) / f"thumb_{stem}.webp")
                _write_animated_webp(img, output_path, max_edge, config)
                return Derivative(local_path=output_path, mime_type=WEBP_MIME)
            img.load()
            oriented = ImageOps.exif_transpose(img)
            if oriented is None:
                oriented = img
            rgb = _flatten_to_rgb(oriented)
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise PermanentError(f"Unreadable image: {exc}") from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise PermanentError(f"Corrupt image data: {exc}") from exc

    rgb.thumbnail((max_edge, max_edge))
    output_path = str(Path(output_dir) / f"thumb_{stem}.jpg")
    rgb.save(output_path, format="JPEG", quality=config.thumbnail_jpeg_quality)
    return Derivative(local_path=output_path, mime_type=JPEG_MIME)


def _flatten_to_rgb(image: Image.Image) -> Image.Image:
    if image.mode in {"RGBA", "LA"} or (
        image.mode == "P" and "transparency" in image.info
    ):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return image.convert("RGB")


def _write_animated_webp(
    image: Image.Image,
    output_path: str,
    max_edge: int,
    config: Config,
) -> None:
    frames: list[Image.Image] = []
    durations: list[int] = []
    for frame in ImageSequence.Iterator(image):
        rgba = frame.convert("RGBA")
        rgba.thumbnail((max_edge, max_edge))
        frames.append(rgba)
        duration = frame.info.get("duration", image.info.get("duration", 100))
        durations.append(int(duration or 100))
    if not frames:
        raise PermanentError("Animated image has no frames")
    frames[0].save(
        output_path,
        format="WEBP",
        save_all=True,
        append_images=frames[1:],
        duration=durations,
        loop=int(image.info.get("loop", 0) or 0),
        quality=config.thumbnail_jpeg_quality,
    )


def _video_derivatives(
    source_path: str,
    *,
    stem: str,
    info: MediaInfo,
    output_dir: str,
    config: Config,
) -> DerivativeSet:
    errors: list[str] = []
    thumbnail: Derivative | None = None
    frames: list[Derivative] = []
    duration = info.duration_seconds or 0.0

    thumb_path = str(Path(output_dir) / f"thumb_{stem}.jpg")
    try:
        extract_frame(
            source_path,
            thumb_path,
            at_seconds=duration * config.video_thumbnail_position,
            width=config.thumbnail_max_edge,
            config=config,
        )
        thumbnail = Derivative(local_path=thumb_path, mime_type=JPEG_MIME)
    except DamflowError as exc:
        errors.append(f"thumbnail: {exc}")

    if duration <= 0:
        if not errors:
            logger.info(
                "Skipping scrub strip for video without duration",
                extra={"stage": "derivatives"},
            )
        return DerivativeSet(thumbnail=thumbnail, errors=errors)

    try:
        paths = extract_frames_at(
            source_path,
            str(Path(output_dir) / "scrub"),
            timestamps=scrub_timestamps(duration, config.scrub_frame_count),
            width=config.scrub_frame_width,
            name_prefix=f"{stem}-scrub-",
            config=config,
        )
        frames = [Derivative(local_path=path, mime_type=JPEG_MIME) for path in paths]
    except DamflowError as exc:
        errors.append(f"scrub: {exc}")

    return DerivativeSet(thumbnail=thumbnail, preview_frames=frames, errors=errors)
