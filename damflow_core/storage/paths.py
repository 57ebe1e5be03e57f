from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Iterable
from urllib.parse import urlparse


def _strip_slashes(value: str) -> str:
    return value.strip("/")


def _join_parts(parts: Iterable[str]) -> str:
    return "/".join(_strip_slashes(part) for part in parts if part)


def has_uri_scheme(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme) and len(parsed.scheme) > 1


def join_uri(base_uri: str, *parts: str) -> str:
    parsed = urlparse(base_uri)
    if parsed.scheme == "file":
        safe_parts = [_strip_slashes(part) for part in parts if part]
        return str(Path(parsed.path).joinpath(*safe_parts))
    if parsed.scheme and parsed.netloc:
        base = base_uri.rstrip("/")
        return f"{base}/{_join_parts(parts)}"
    safe_parts = [_strip_slashes(part) for part in parts if part]
    return str(Path(base_uri).joinpath(*safe_parts))


def original_key(filename: str) -> str:
    return _join_parts(("originals", filename))


def thumbnail_key(filename: str, extension: str) -> str:
    stem = PurePosixPath(filename).stem
    return _join_parts(("thumbnails", f"thumb_{stem}{extension}"))


def preview_key(frame_name: str) -> str:
    return _join_parts(("previews", frame_name))


def key_from_url(url: str, *bases: str | None) -> str:
    for base in bases:
        if not base:
            continue
        normalized = base.rstrip("/") + "/"
        if url.startswith(normalized):
            return url[len(normalized) :]
        parsed = urlparse(base)
        if parsed.scheme == "file" and url.startswith(parsed.path.rstrip("/") + "/"):
            return url[len(parsed.path.rstrip("/")) + 1 :]
    raise ValueError(f"URL is not managed by this store: {url}")
