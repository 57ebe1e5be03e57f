from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from damflow_core.assets.store import SqliteAssetStore, type_filter_clause
from damflow_core.assets.types import AiData, Asset, IngestState
from damflow_core.errors import NotFoundError, ValidationError

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _asset(
    asset_id: str,
    *,
    mime_type: str = "image/jpeg",
    minutes: int = 0,
    **kwargs,
) -> Asset:
    return Asset(
        id=asset_id,
        filename=f"{asset_id}.bin",
        original_name=f"{asset_id}.bin",
        mime_type=mime_type,
        size=100,
        path=f"file:///storage/originals/{asset_id}.bin",
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture
def store(tmp_path: Path) -> SqliteAssetStore:
    return SqliteAssetStore(str(tmp_path / "assets.sqlite"))


def test_create_and_get_roundtrip(store: SqliteAssetStore):
    ai_data = AiData(
        tags=["forklift"],
        colors=["Red"],
        description="Loading dock",
        is_video_analysis=False,
        extra={"mood": "calm"},
    )
    store.create(
        _asset(
            "a1",
            ai_data=ai_data,
            embedding=[0.5, 0.5],
            preview_frames=["file:///p/0.jpg", "file:///p/1.jpg"],
            uploaded_by="user-7",
        )
    )

    loaded = store.require("a1")
    assert loaded.ai_data == ai_data
    assert loaded.embedding == [0.5, 0.5]
    assert loaded.preview_frames == ["file:///p/0.jpg", "file:///p/1.jpg"]
    assert loaded.created_at == BASE_TIME
    assert loaded.uploaded_by == "user-7"
    assert loaded.ingest_state == IngestState.STORED
    assert store.get("missing") is None
    with pytest.raises(NotFoundError):
        store.require("missing")


def test_duplicate_filename_is_rejected(store: SqliteAssetStore):
    store.create(_asset("a1"))
    duplicate = replace(_asset("a2"), filename="a1.bin")
    with pytest.raises(ValidationError):
        store.create(duplicate)


def test_update_derivatives_keeps_existing_values(store: SqliteAssetStore):
    store.create(_asset("v1", mime_type="video/mp4"))
    store.update_derivatives(
        "v1",
        thumbnail_path="file:///t.jpg",
        preview_frames=["file:///f0.jpg"],
        width=640,
        height=360,
        duration_seconds=5.0,
    )
    store.update_derivatives("v1", thumbnail_path=None, preview_frames=[])

    loaded = store.require("v1")
    assert loaded.thumbnail_path == "file:///t.jpg"
    assert loaded.preview_frames == ["file:///f0.jpg"]
    assert (loaded.width, loaded.height) == (640, 360)
    assert loaded.duration_seconds == pytest.approx(5.0)
    assert loaded.cover_url == "file:///t.jpg"


def test_update_enrichment_without_embedding_clears_vector(store):
    store.create(_asset("a1", embedding=[1.0, 0.0]))
    store.update_enrichment("a1", AiData(tags=["new"]))
    loaded = store.require("a1")
    assert loaded.embedding is None
    assert loaded.ai_data is not None
    assert loaded.ai_data.tags == ["new"]


def test_rename(store: SqliteAssetStore):
    store.create(_asset("a1"))
    assert store.rename("a1", "  Safety poster.jpg ").original_name == (
        "Safety poster.jpg"
    )
    with pytest.raises(ValidationError):
        store.rename("a1", "   ")
    with pytest.raises(NotFoundError):
        store.rename("missing", "x")


def test_list_recent_filters_and_orders(store: SqliteAssetStore):
    store.create(_asset("img", minutes=1, ai_data=AiData(colors=["Blue"])))
    store.create(_asset("vid", mime_type="video/mp4", minutes=2))
    store.create(_asset("doc", mime_type="application/pdf", minutes=3))
    store.create(_asset("gone", minutes=4))
    store.soft_delete("gone")

    assert [a.id for a in store.list_recent(limit=10)] == ["doc", "vid", "img"]
    assert [a.id for a in store.list_recent(limit=1, offset=1)] == ["vid"]
    assert [a.id for a in store.list_recent(limit=10, asset_type="video")] == ["vid"]
    assert [a.id for a in store.list_recent(limit=10, asset_type="all")] == [
        "doc",
        "vid",
        "img",
    ]
    assert [a.id for a in store.list_active(color="blue")] == ["img"]
    assert store.list_active(color="Red") == []


def test_unknown_type_filter_is_rejected():
    assert type_filter_clause(None) is None
    with pytest.raises(ValidationError):
        type_filter_clause("spreadsheet")


def test_soft_delete_restore_and_trash_listing(store: SqliteAssetStore):
    for index in range(4):
        store.create(_asset(f"a{index}", minutes=index))
    for index in range(3):
        store.soft_delete(f"a{index}", now=BASE_TIME + timedelta(days=index))
    # Deleting again keeps the original timestamp.
    store.soft_delete("a0", now=BASE_TIME + timedelta(days=9))

    page = store.list_trash(page=1, page_size=2)
    assert page.total == 3
    assert page.total_pages == 2
    assert [a.id for a in page.assets] == ["a2", "a1"]
    assert [a.id for a in store.list_trash(page=2, page_size=2).assets] == ["a0"]
    assert store.require("a0").deleted_at == BASE_TIME

    expired = store.trashed(deleted_before=BASE_TIME + timedelta(hours=1))
    assert [a.id for a in expired] == ["a0"]

    restored = store.restore("a1")
    assert restored.deleted_at is None
    assert store.is_active("a1")
    assert not store.is_active("a2")
    with pytest.raises(NotFoundError):
        store.soft_delete("missing")
    with pytest.raises(ValidationError):
        store.list_trash(page=0)


def test_clicks_and_purge(store: SqliteAssetStore):
    store.create(_asset("a1"))
    store.create(_asset("a2"))
    store.track_click("a1", query="demo", position=0)
    store.track_click("a1", query="other")
    store.track_click("a2", query="demo")

    assert store.click_counts(["a1", "a2", "a1"]) == {"a1": 2, "a2": 1}
    assert store.click_counts(["a1"], query="demo") == {"a1": 1}
    assert store.click_counts([]) == {}

    store.soft_delete("a2")
    with pytest.raises(NotFoundError):
        store.track_click("a2")

    store.purge("a1")
    assert store.get("a1") is None
    assert store.click_counts(["a1"]) == {}


def test_search_log(store: SqliteAssetStore):
    store.log_search("forklift", result_count=0, is_fallback=True, user_id="u1")
    store.log_search("demo", result_count=3, is_fallback=False)
    assert store.search_log_count() == 2


def test_find_for_backfill(store: SqliteAssetStore):
    store.create(_asset("no-thumb", minutes=1))
    store.create(
        _asset(
            "no-strip",
            mime_type="video/mp4",
            minutes=2,
            thumbnail_path="file:///t.jpg",
        )
    )
    store.create(
        _asset(
            "failed",
            mime_type="application/pdf",
            minutes=3,
            ingest_state=IngestState.ENRICHMENT_FAILED,
        )
    )
    store.create(
        _asset(
            "unindexed",
            minutes=4,
            thumbnail_path="file:///u.jpg",
            ai_data=AiData(tags=["x"]),
            ingest_state=IngestState.INDEX_SKIPPED,
        )
    )
    store.create(
        _asset(
            "complete",
            minutes=5,
            thumbnail_path="file:///c.jpg",
            ai_data=AiData(tags=["x"]),
            embedding=[1.0],
            ingest_state=IngestState.INDEXED,
        )
    )
    store.create(_asset("trashed", minutes=6))
    store.soft_delete("trashed")

    derivatives = store.find_for_backfill(missing_derivatives=True)
    assert [a.id for a in derivatives] == ["no-thumb", "no-strip"]
    enrichment = store.find_for_backfill(failed_enrichment=True)
    assert [a.id for a in enrichment] == ["failed", "unindexed"]
    both = store.find_for_backfill(
        missing_derivatives=True, failed_enrichment=True, limit=3
    )
    assert [a.id for a in both] == ["no-thumb", "no-strip", "failed"]
    assert store.find_for_backfill() == []


def test_state_counts_ignore_trash(store: SqliteAssetStore):
    store.create(_asset("a1", ingest_state=IngestState.INDEXED))
    store.create(_asset("a2", ingest_state=IngestState.INDEXED))
    store.create(_asset("a3"))
    store.update_state("a3", IngestState.ENRICHMENT_FAILED)
    store.create(_asset("a4"))
    store.soft_delete("a4")

    assert store.state_counts() == {"INDEXED": 2, "ENRICHMENT_FAILED": 1}
