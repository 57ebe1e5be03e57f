from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from damflow_core.assets.types import MediaFamily, media_family
from damflow_core.config import Config
from damflow_core.errors import MediaTimeoutError, PermanentError, RecoverableError
from damflow_core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MediaInfo:
    duration_seconds: float | None = None
    width: int | None = None
    height: int | None = None
    has_audio: bool = False
    has_video: bool = False

    @property
    def is_empty(self) -> bool:
        return (
            self.duration_seconds is None
            and self.width is None
            and self.height is None
            and not self.has_audio
            and not self.has_video
        )


_CORRUPT_MARKERS = (
    "invalid data found when processing input",
    "moov atom not found",
    "output file does not contain any stream",
    "could not find codec parameters",
    "invalid argument",
    "unknown format",
)


def _raise_media_error(step: str, stderr: str) -> None:
    message = stderr.strip() or "Unknown media error"
    lowered = message.lower()
    if any(marker in lowered for marker in _CORRUPT_MARKERS):
        raise PermanentError(f"{step} failed: {message}")
    raise RecoverableError(f"{step} failed: {message}")


def _require_binary(value: str | None, name: str) -> str:
    if value and (Path(value).exists() or shutil.which(value)):
        return value
    raise RecoverableError(f"Missing required binary: {name}")


def _parse_fraction(value: str | None) -> float | None:
    if not value:
        return None
    if "/" in value:
        num, den = value.split("/", 1)
        try:
            return float(num) / float(den)
        except (ValueError, ZeroDivisionError):
            return None
    try:
        return float(value)
    except ValueError:
        return None


def run_media_command(
    cmd: list[str],
    *,
    step: str,
    timeout_s: float,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        # subprocess.run kills the child before re-raising.
        raise MediaTimeoutError(f"{step} timed out after {timeout_s}s") from exc
    except subprocess.CalledProcessError as exc:
        _raise_media_error(step, exc.stderr or exc.stdout or str(exc))
        raise


def probe(path: str, mime_type: str, config: Config) -> MediaInfo:
    family = media_family(mime_type)
    try:
        if family in {MediaFamily.IMAGE, MediaFamily.ANIMATION}:
            return _probe_image(path)
        if family in {MediaFamily.VIDEO, MediaFamily.AUDIO}:
            return _probe_av(path, config)
    except (PermanentError, RecoverableError, OSError, ValueError) as exc:
        logger.warning(
            "Media probe failed",
            extra={
                "stage": "probe",
                "mime_type": mime_type,
                "error_message": str(exc),
            },
        )
    return MediaInfo()


def _probe_image(path: str) -> MediaInfo:
    try:
        with Image.open(path) as image:
            width, height = image.size
            frames = getattr(image, "n_frames", 1)
            duration_ms = 0
            if frames > 1:
                for index in range(frames):
                    image.seek(index)
                    duration_ms += int(image.info.get("duration", 0) or 0)
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise PermanentError(f"Unreadable image: {exc}") from exc
    return MediaInfo(
        duration_seconds=duration_ms / 1000.0 if duration_ms else None,
        width=int(width),
        height=int(height),
        has_video=frames > 1,
    )


def _probe_av(path: str, config: Config) -> MediaInfo:
    ffprobe = _require_binary(config.ffprobe_bin, "ffprobe")
    cmd = [
        ffprobe,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        path,
    ]
    result = run_media_command(cmd, step="ffprobe", timeout_s=config.ffmpeg_timeout_s)
    payload = json.loads(result.stdout or "{}")
    format_info = payload.get("format", {}) or {}
    streams = payload.get("streams", []) or []

    duration = _parse_fraction(format_info.get("duration"))
    has_audio = False
    has_video = False
    width = None
    height = None
    for stream in streams:
        codec_type = stream.get("codec_type")
        if codec_type == "audio":
            has_audio = True
        elif codec_type == "video":
            disposition = stream.get("disposition") or {}
            if disposition.get("attached_pic"):
                continue
            has_video = True
            width = stream.get("width")
            height = stream.get("height")
        else:
            continue
        stream_duration = _parse_fraction(stream.get("duration"))
        if stream_duration and (duration is None or stream_duration > duration):
            duration = stream_duration

    return MediaInfo(
        duration_seconds=duration if duration and duration > 0 else None,
        width=int(width) if width else None,
        height=int(height) if height else None,
        has_audio=has_audio,
        has_video=has_video,
    )


def extract_frame(
    input_path: str,
    output_path: str,
    *,
    at_seconds: float,
    width: int,
    config: Config,
) -> str:
    ffmpeg = _require_binary(config.ffmpeg_bin, "ffmpeg")
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        ffmpeg,
        "-y",
        "-ss",
        f"{max(at_seconds, 0.0):.3f}",
        "-i",
        input_path,
        "-frames:v",
        "1",
        "-vf",
        f"scale='min({width},iw)':-2,format=yuvj420p",
        "-q:v",
        "3",
        output_path,
    ]
    run_media_command(
        cmd,
        step="ffmpeg extract frame",
        timeout_s=config.ffmpeg_timeout_s,
    )
    if not Path(output_path).exists() or Path(output_path).stat().st_size == 0:
        raise RecoverableError(f"ffmpeg produced no frame at {at_seconds:.3f}s")
    return output_path


def extract_frames_at(
    input_path: str,
    output_dir: str,
    *,
    timestamps: list[float],
    width: int,
    name_prefix: str,
    config: Config,
) -> list[str]:
    """Extract one JPEG per timestamp, in the order given.

    Seeks past the last decodable frame reuse the previous frame, so very short
    clips yield duplicates instead of failing.
    """
    frames: list[str] = []
    digits = max(2, len(str(len(timestamps))))
    for index, timestamp in enumerate(timestamps):
        output_path = str(Path(output_dir) / f"{name_prefix}{index:0{digits}d}.jpg")
        try:
            frames.append(
                extract_frame(
                    input_path,
                    output_path,
                    at_seconds=timestamp,
                    width=width,
                    config=config,
                )
            )
        except RecoverableError as exc:
            if isinstance(exc, MediaTimeoutError):
                raise
            if frames:
                shutil.copyfile(frames[-1], output_path)
            else:
                extract_frame(
                    input_path,
                    output_path,
                    at_seconds=0.0,
                    width=width,
                    config=config,
                )
            frames.append(output_path)
    return frames
