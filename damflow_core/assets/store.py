from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from damflow_core.assets.types import AiData, Asset, IngestState
from damflow_core.errors import NotFoundError, RecoverableError, ValidationError

_ASSET_COLUMNS = (
    "id",
    "filename",
    "original_name",
    "mime_type",
    "size",
    "path",
    "thumbnail_path",
    "preview_frames",
    "ai_data",
    "embedding",
    "deleted_at",
    "uploaded_by",
    "created_at",
    "ingest_state",
    "width",
    "height",
    "duration_seconds",
)

_SELECT_ASSET = f"SELECT {', '.join(_ASSET_COLUMNS)} FROM assets"

_TYPE_FILTERS = {
    "image": ("mime_type LIKE ?", "image/%"),
    "video": ("mime_type LIKE ?", "video/%"),
    "audio": ("mime_type LIKE ?", "audio/%"),
    "document": ("mime_type = ?", "application/pdf"),
}

_COLOR_FILTER = (
    "EXISTS (SELECT 1 FROM json_each(assets.ai_data, '$.colors') "
    "WHERE lower(json_each.value) = lower(?))"
)


def _to_ts(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_ts(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _load_json(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return None


def _row_to_asset(row: sqlite3.Row | tuple[Any, ...]) -> Asset:
    values = dict(zip(_ASSET_COLUMNS, row))
    frames = _load_json(values["preview_frames"])
    ai_payload = _load_json(values["ai_data"])
    embedding = _load_json(values["embedding"])
    created_at = _from_ts(values["created_at"])
    return Asset(
        id=values["id"],
        filename=values["filename"],
        original_name=values["original_name"],
        mime_type=values["mime_type"],
        size=int(values["size"] or 0),
        path=values["path"],
        thumbnail_path=values["thumbnail_path"],
        preview_frames=(
            [str(item) for item in frames] if isinstance(frames, list) else []
        ),
        ai_data=AiData.from_dict(ai_payload) if isinstance(ai_payload, dict) else None,
        embedding=(
            [float(item) for item in embedding] if isinstance(embedding, list) else None
        ),
        deleted_at=_from_ts(values["deleted_at"]),
        uploaded_by=values["uploaded_by"],
        created_at=created_at or datetime.now(timezone.utc),
        ingest_state=IngestState(values["ingest_state"] or IngestState.STORED.value),
        width=values["width"],
        height=values["height"],
        duration_seconds=values["duration_seconds"],
    )


def type_filter_clause(asset_type: str | None) -> tuple[str, str] | None:
    if not asset_type or asset_type == "all":
        return None
    clause = _TYPE_FILTERS.get(asset_type)
    if clause is None:
        raise ValidationError(f"Unsupported asset type filter: {asset_type}")
    return clause


@dataclass(frozen=True)
class TrashPage:
    assets: list[Asset]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


@dataclass(frozen=True)
class SqliteAssetStore:
    path: str

    def __post_init__(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assets (
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL UNIQUE,
                    original_name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    path TEXT NOT NULL,
                    thumbnail_path TEXT,
                    preview_frames TEXT,
                    ai_data TEXT,
                    embedding TEXT,
                    deleted_at REAL,
                    uploaded_by TEXT,
                    created_at REAL NOT NULL,
                    ingest_state TEXT NOT NULL,
                    width INTEGER,
                    height INTEGER,
                    duration_seconds REAL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_assets_created "
                "ON assets (deleted_at, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS asset_clicks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    asset_id TEXT NOT NULL,
                    query TEXT,
                    position INTEGER,
                    user_id TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_clicks_asset ON asset_clicks (asset_id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS search_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    query TEXT NOT NULL,
                    result_count INTEGER NOT NULL,
                    is_fallback INTEGER NOT NULL,
                    user_id TEXT,
                    created_at REAL NOT NULL
                )
                """
            )

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.execute(sql, tuple(params))
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise RecoverableError(f"SQLite asset store failed: {exc}") from exc

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[tuple[Any, ...]]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise RecoverableError(f"SQLite asset store failed: {exc}") from exc

    def create(self, asset: Asset) -> Asset:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO assets ({', '.join(_ASSET_COLUMNS)})
                    VALUES ({', '.join('?' for _ in _ASSET_COLUMNS)})
                    """,
                    (
                        asset.id,
                        asset.filename,
                        asset.original_name,
                        asset.mime_type,
                        asset.size,
                        asset.path,
                        asset.thumbnail_path,
                        json.dumps(list(asset.preview_frames)),
                        json.dumps(asset.ai_data.to_dict()) if asset.ai_data else None,
                        json.dumps(asset.embedding) if asset.embedding else None,
                        _to_ts(asset.deleted_at),
                        asset.uploaded_by,
                        _to_ts(asset.created_at),
                        asset.ingest_state.value,
                        asset.width,
                        asset.height,
                        asset.duration_seconds,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Asset already exists: {asset.filename}") from exc
        except sqlite3.Error as exc:
            raise RecoverableError(f"SQLite asset store failed: {exc}") from exc
        return asset

    def get(self, asset_id: str) -> Asset | None:
        rows = self._query(f"{_SELECT_ASSET} WHERE id = ?", (asset_id,))
        if not rows:
            return None
        return _row_to_asset(rows[0])

    def require(self, asset_id: str) -> Asset:
        asset = self.get(asset_id)
        if asset is None:
            raise NotFoundError(f"Asset not found: {asset_id}")
        return asset

    def is_active(self, asset_id: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM assets WHERE id = ? AND deleted_at IS NULL",
            (asset_id,),
        )
        return bool(rows)

    def update_derivatives(
        self,
        asset_id: str,
        *,
        thumbnail_path: str | None = None,
        preview_frames: list[str] | None = None,
        width: int | None = None,
        height: int | None = None,
        duration_seconds: float | None = None,
    ) -> None:
        assignments: list[str] = []
        params: list[Any] = []
        if thumbnail_path:
            assignments.append("thumbnail_path = ?")
            params.append(thumbnail_path)
        if preview_frames:
            assignments.append("preview_frames = ?")
            params.append(json.dumps(list(preview_frames)))
        for column, value in (
            ("width", width),
            ("height", height),
            ("duration_seconds", duration_seconds),
        ):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)
        if not assignments:
            return
        params.append(asset_id)
        self._execute(
            f"UPDATE assets SET {', '.join(assignments)} WHERE id = ?",
            params,
        )

    def update_enrichment(
        self,
        asset_id: str,
        ai_data: AiData,
        embedding: list[float] | None = None,
    ) -> None:
        # The stored vector always describes the stored ai_data.
        vector = json.dumps(list(embedding)) if embedding else None
        self._execute(
            "UPDATE assets SET ai_data = ?, embedding = ? WHERE id = ?",
            (json.dumps(ai_data.to_dict()), vector, asset_id),
        )

    def update_state(self, asset_id: str, state: IngestState) -> None:
        self._execute(
            "UPDATE assets SET ingest_state = ? WHERE id = ?",
            (state.value, asset_id),
        )

    def rename(self, asset_id: str, original_name: str) -> Asset:
        name = original_name.strip()
        if not name:
            raise ValidationError("original_name must not be empty")
        if not self._execute(
            "UPDATE assets SET original_name = ? WHERE id = ?",
            (name, asset_id),
        ):
            raise NotFoundError(f"Asset not found: {asset_id}")
        return self.require(asset_id)

    def list_recent(
        self,
        *,
        limit: int,
        offset: int = 0,
        asset_type: str | None = None,
        color: str | None = None,
    ) -> list[Asset]:
        clauses = ["deleted_at IS NULL"]
        params: list[Any] = []
        type_clause = type_filter_clause(asset_type)
        if type_clause is not None:
            clauses.append(type_clause[0])
            params.append(type_clause[1])
        if color:
            clauses.append(_COLOR_FILTER)
            params.append(color)
        params.extend([limit, offset])
        rows = self._query(
            f"{_SELECT_ASSET} WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params,
        )
        return [_row_to_asset(row) for row in rows]

    def list_active(
        self,
        *,
        asset_type: str | None = None,
        color: str | None = None,
    ) -> list[Asset]:
        clauses = ["deleted_at IS NULL"]
        params: list[Any] = []
        type_clause = type_filter_clause(asset_type)
        if type_clause is not None:
            clauses.append(type_clause[0])
            params.append(type_clause[1])
        if color:
            clauses.append(_COLOR_FILTER)
            params.append(color)
        rows = self._query(
            f"{_SELECT_ASSET} WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
            params,
        )
        return [_row_to_asset(row) for row in rows]

    def soft_delete(self, asset_id: str, *, now: datetime | None = None) -> None:
        deleted_at = _to_ts(now or datetime.now(timezone.utc))
        if not self._execute(
            "UPDATE assets SET deleted_at = COALESCE(deleted_at, ?) WHERE id = ?",
            (deleted_at, asset_id),
        ):
            raise NotFoundError(f"Asset not found: {asset_id}")

    def restore(self, asset_id: str) -> Asset:
        if not self._execute(
            "UPDATE assets SET deleted_at = NULL WHERE id = ?",
            (asset_id,),
        ):
            raise NotFoundError(f"Asset not found: {asset_id}")
        return self.require(asset_id)

    def list_trash(self, *, page: int = 1, page_size: int = 15) -> TrashPage:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        total_rows = self._query(
            "SELECT COUNT(*) FROM assets WHERE deleted_at IS NOT NULL"
        )
        total = int(total_rows[0][0]) if total_rows else 0
        rows = self._query(
            f"{_SELECT_ASSET} WHERE deleted_at IS NOT NULL "
            "ORDER BY deleted_at DESC LIMIT ? OFFSET ?",
            (page_size, (page - 1) * page_size),
        )
        return TrashPage(
            assets=[_row_to_asset(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def trashed(self, *, deleted_before: datetime | None = None) -> list[Asset]:
        if deleted_before is None:
            rows = self._query(
                f"{_SELECT_ASSET} WHERE deleted_at IS NOT NULL ORDER BY deleted_at"
            )
        else:
            rows = self._query(
                f"{_SELECT_ASSET} WHERE deleted_at IS NOT NULL AND deleted_at < ? "
                "ORDER BY deleted_at",
                (_to_ts(deleted_before),),
            )
        return [_row_to_asset(row) for row in rows]

    def purge(self, asset_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM asset_clicks WHERE asset_id = ?", (asset_id,))
                conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
        except sqlite3.Error as exc:
            raise RecoverableError(f"SQLite asset store failed: {exc}") from exc

    def track_click(
        self,
        asset_id: str,
        *,
        query: str | None = None,
        position: int | None = None,
        user_id: str | None = None,
    ) -> None:
        if not self.is_active(asset_id):
            raise NotFoundError(f"Asset not found: {asset_id}")
        self._execute(
            "INSERT INTO asset_clicks (asset_id, query, position, user_id, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                asset_id,
                query,
                position,
                user_id,
                datetime.now(timezone.utc).timestamp(),
            ),
        )

    def click_counts(
        self,
        asset_ids: Iterable[str],
        *,
        query: str | None = None,
    ) -> dict[str, int]:
        ids = list(dict.fromkeys(asset_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        sql = (
            "SELECT asset_id, COUNT(*) FROM asset_clicks "
            f"WHERE asset_id IN ({placeholders})"
        )
        params: list[Any] = list(ids)
        if query is not None:
            sql += " AND query = ?"
            params.append(query)
        rows = self._query(f"{sql} GROUP BY asset_id", params)
        return {str(asset_id): int(count) for asset_id, count in rows}

    def log_search(
        self,
        query: str,
        *,
        result_count: int,
        is_fallback: bool,
        user_id: str | None = None,
    ) -> None:
        self._execute(
            "INSERT INTO search_logs (query, result_count, is_fallback, user_id, "
            "created_at) VALUES (?, ?, ?, ?, ?)",
            (
                query,
                result_count,
                1 if is_fallback else 0,
                user_id,
                datetime.now(timezone.utc).timestamp(),
            ),
        )

    def search_log_count(self) -> int:
        rows = self._query("SELECT COUNT(*) FROM search_logs")
        return int(rows[0][0]) if rows else 0

    def find_for_backfill(
        self,
        *,
        missing_derivatives: bool = False,
        failed_enrichment: bool = False,
        limit: int | None = None,
    ) -> list[Asset]:
        conditions: list[str] = []
        params: list[Any] = []
        if missing_derivatives:
            conditions.append(
                "(thumbnail_path IS NULL AND (mime_type LIKE 'image/%' "
                "OR mime_type LIKE 'video/%'))"
            )
            conditions.append(
                "(mime_type LIKE 'video/%' AND (preview_frames IS NULL "
                "OR preview_frames = '[]'))"
            )
        if failed_enrichment:
            conditions.append("(ai_data IS NULL AND ingest_state = ?)")
            params.append(IngestState.ENRICHMENT_FAILED.value)
            conditions.append("(ai_data IS NOT NULL AND embedding IS NULL)")
        if not conditions:
            return []
        sql = (
            f"{_SELECT_ASSET} WHERE deleted_at IS NULL AND "
            f"({' OR '.join(conditions)}) ORDER BY created_at"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._query(sql, params)
        return [_row_to_asset(row) for row in rows]

    def state_counts(self) -> dict[str, int]:
        rows = self._query(
            "SELECT ingest_state, COUNT(*) FROM assets "
            "WHERE deleted_at IS NULL GROUP BY ingest_state"
        )
        return {str(state): int(count) for state, count in rows}
