from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import urlparse

import fsspec

from damflow_core.errors import PermanentError
from damflow_core.storage.paths import join_uri, key_from_url

_COPY_CHUNK_BYTES = 8 * 1024 * 1024


@dataclass(frozen=True)
class ObjectStore:
    base_uri: str
    fs: fsspec.AbstractFileSystem
    base_path: str
    is_remote: bool
    public_url_base: str | None = None

    @classmethod
    def from_base_uri(
        cls,
        base_uri: str,
        public_url_base: str | None = None,
    ) -> "ObjectStore":
        parsed = urlparse(base_uri)
        if parsed.scheme == "file":
            fs = fsspec.filesystem("file")
            return cls(
                base_uri=base_uri,
                fs=fs,
                base_path=os.path.abspath(parsed.path),
                is_remote=False,
                public_url_base=public_url_base,
            )
        if parsed.scheme and parsed.netloc:
            fs, path = fsspec.core.url_to_fs(base_uri)
            return cls(
                base_uri=base_uri,
                fs=fs,
                base_path=path,
                is_remote=True,
                public_url_base=public_url_base,
            )
        fs = fsspec.filesystem("file")
        return cls(
            base_uri=base_uri,
            fs=fs,
            base_path=os.path.abspath(base_uri),
            is_remote=False,
            public_url_base=public_url_base,
        )

    def join(self, *parts: str) -> str:
        safe_parts = [part.strip("/") for part in parts if part]
        if self.is_remote:
            return "/".join([self.base_path.rstrip("/"), *safe_parts])
        return str(Path(self.base_path).joinpath(*safe_parts))

    def url_for(self, key: str) -> str:
        if self.public_url_base:
            return f"{self.public_url_base.rstrip('/')}/{key.lstrip('/')}"
        if self.is_remote:
            return join_uri(self.base_uri, key)
        return self.join(key)

    def key_for(self, url: str) -> str:
        return key_from_url(url, self.public_url_base, self.base_uri, self.base_path)

    def put(
        self,
        source: str | os.PathLike[str] | BinaryIO,
        key: str,
        mime_type: str,
    ) -> str:
        dest = self.join(key)
        if self.is_remote:
            with self.fs.open(dest, "wb", **self._write_kwargs(mime_type)) as handle:
                _copy_source(source, handle)
        else:
            _atomic_local_write(source, dest)
        return self.url_for(key)

    def delete(self, url: str) -> None:
        path = self.join(self.key_for(url))
        self.fs.rm(path)

    def fetch(
        self,
        url: str,
        dest_path: str,
        *,
        max_bytes: int | None = None,
    ) -> int:
        path = self.join(self.key_for(url))
        size = 0
        try:
            with self.fs.open(path, "rb") as reader, open(dest_path, "wb") as writer:
                while True:
                    chunk = reader.read(_COPY_CHUNK_BYTES)
                    if not chunk:
                        break
                    size += len(chunk)
                    if max_bytes and size > max_bytes:
                        raise PermanentError("Download exceeded MAX_RAW_BYTES")
                    writer.write(chunk)
        except FileNotFoundError as exc:
            Path(dest_path).unlink(missing_ok=True)
            raise PermanentError(f"Object not found: {url}") from exc
        except PermanentError:
            Path(dest_path).unlink(missing_ok=True)
            raise
        return size

    def exists(self, url: str) -> bool:
        return bool(self.fs.exists(self.join(self.key_for(url))))

    def _write_kwargs(self, mime_type: str) -> dict[str, str]:
        protocol = self.fs.protocol
        protocols = (protocol,) if isinstance(protocol, str) else tuple(protocol)
        if any(name in {"s3", "s3a"} for name in protocols):
            return {"ContentType": mime_type}
        if any(name in {"gs", "gcs"} for name in protocols):
            return {"content_type": mime_type}
        return {}


def _copy_source(source: str | os.PathLike[str] | BinaryIO, handle: BinaryIO) -> None:
    if isinstance(source, (str, os.PathLike)):
        with open(source, "rb") as src:
            shutil.copyfileobj(src, handle, _COPY_CHUNK_BYTES)
        return
    shutil.copyfileobj(source, handle, _COPY_CHUNK_BYTES)


def _atomic_local_write(
    source: str | os.PathLike[str] | BinaryIO,
    dest_path: str,
) -> None:
    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, dir=str(dest.parent)) as tmp:
        tmp_path = tmp.name
        try:
            _copy_source(source, tmp)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            os.unlink(tmp_path)
            raise
    os.replace(tmp_path, dest_path)
