import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Any

import fitz
import pytest
from PIL import Image

from damflow_core.config import get_config
from damflow_core.enrichment.prompts import EXPANSION_SYSTEM_PROMPT
from damflow_core.runtime import build_runtime

HAS_FFMPEG = bool(shutil.which("ffmpeg") and shutil.which("ffprobe"))


def pytest_collection_modifyitems(config, items) -> None:
    if HAS_FFMPEG:
        return
    skip = pytest.mark.skip(reason="ffmpeg and ffprobe are required")
    for item in items:
        if "ffmpeg" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _damflow_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    def set_default(name: str, value: str) -> None:
        if not os.getenv(name):
            monkeypatch.setenv(name, value)

    set_default("ENV", "test")
    set_default("LOG_LEVEL", "INFO")
    set_default("MAX_RAW_BYTES", "500000000")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "db" / "damflow.sqlite"))
    monkeypatch.setenv("SCRATCH_DIR", str(tmp_path / "scratch"))
    monkeypatch.setenv("INGEST_WORKERS", "2")
    monkeypatch.setenv("MODEL_CALLS_PER_MIN", "0")
    monkeypatch.delenv("PUBLIC_URL_BASE", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


class FakeModelClient:
    """In-process stand-in for the model provider.

    Analysis replies size their tag list from the requested range in the
    prompt, so specificity flows through end to end.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.transcripts: list[str] = []
        self.embedded: list[str] = []
        self.transcript: str | None = "Welcome to the onboarding walkthrough."
        self.vectors: dict[str, list[float]] = {}
        self.default_vector = [1.0, 0.0, 0.0]
        self.expansions: dict[str, list[str]] = {}
        self.colors: list[Any] = ["blue", "#ff0000", "plaid", "Green", "White"]
        self.extra: dict[str, Any] = {}
        self.complete_error: Exception | None = None
        self.embed_error: Exception | None = None
        self.transcribe_error: Exception | None = None
        self._lock = threading.Lock()

    def complete_json(
        self,
        *,
        model: str,
        system: str,
        content: Any,
        temperature: float,
        retry: bool = False,
    ) -> dict[str, Any]:
        with self._lock:
            self.calls.append(
                {
                    "model": model,
                    "system": system,
                    "content": content,
                    "temperature": temperature,
                    "retry": retry,
                }
            )
        if self.complete_error is not None:
            raise self.complete_error
        if system == EXPANSION_SYSTEM_PROMPT:
            term = _prompt_text(content).split('"')[1]
            return {"terms": self.expansions.get(term, [])}
        prompt = _prompt_text(content)
        count = 25 if "20-25" in prompt else 10
        payload: dict[str, Any] = {
            "tags": [f"tag-{index}" for index in range(count)],
            "description": "A friendly instructor at a whiteboard",
            "colors": list(self.colors),
            "educationalContext": "Sales onboarding",
        }
        payload.update(self.extra)
        return payload

    def transcribe(self, path: str) -> str:
        self.transcripts.append(path)
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return self.transcript or ""

    def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return list(self.vectors.get(text, self.default_vector))

    def image_call_count(self) -> int:
        return sum(
            1
            for call in self.calls
            if isinstance(call["content"], list)
            for part in call["content"]
            if part.get("type") == "image_url"
        )


def _prompt_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return " ".join(
        part.get("text", "") for part in content if part.get("type") == "text"
    )


@pytest.fixture
def config():
    return get_config()


@pytest.fixture
def fake_client() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def runtime(config, fake_client):
    built = build_runtime(config, client=fake_client)
    built.coordinator.retry_backoff_s = 0.0
    yield built
    built.close()


class MediaFactory:
    """Builds fixture media on disk at test time."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def image(
        self,
        name: str = "photo.jpg",
        size: tuple[int, int] = (1200, 800),
        color: tuple[int, int, int] = (59, 130, 246),
        mode: str = "RGB",
    ) -> Path:
        path = self.root / name
        fill: Any = color if mode == "RGB" else (*color, 128)
        Image.new(mode, size, fill).save(path)
        return path

    def gif(
        self,
        name: str = "loop.gif",
        frames: int = 6,
        size: tuple[int, int] = (640, 480),
    ) -> Path:
        path = self.root / name
        images = [
            Image.new("RGB", size, (index * 40 % 255, 80, 160))
            for index in range(frames)
        ]
        images[0].save(
            path,
            save_all=True,
            append_images=images[1:],
            duration=100,
            loop=0,
        )
        return path

    def pdf(
        self,
        name: str = "guide.pdf",
        text: str = "Quarterly compliance training outline",
    ) -> Path:
        path = self.root / name
        doc = fitz.open()
        page = doc.new_page()
        page.insert_text((72, 72), text)
        doc.save(str(path))
        doc.close()
        return path

    def corrupt_jpeg(self, name: str = "broken.jpg") -> Path:
        source = self.image(f"source-{name}")
        data = source.read_bytes()
        path = self.root / name
        path.write_bytes(data[: len(data) // 3])
        return path

    def blob(self, name: str, size: int = 2048) -> Path:
        path = self.root / name
        path.write_bytes(os.urandom(size))
        return path

    def video(
        self,
        name: str = "clip.mp4",
        seconds: int = 5,
        audio: bool = True,
    ) -> Path:
        path = self.root / name
        cmd = [
            "ffmpeg",
            "-y",
            "-v",
            "error",
            "-f",
            "lavfi",
            "-i",
            f"testsrc=duration={seconds}:size=640x360:rate=10",
        ]
        if audio:
            cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:duration={seconds}"]
        cmd += ["-c:v", "mpeg4", "-pix_fmt", "yuv420p"]
        if audio:
            cmd += ["-c:a", "aac", "-shortest"]
        cmd.append(str(path))
        subprocess.run(cmd, check=True, capture_output=True)
        return path


@pytest.fixture
def media(tmp_path: Path) -> MediaFactory:
    return MediaFactory(tmp_path / "media")
