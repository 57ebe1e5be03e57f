from datetime import datetime, timedelta, timezone

import pytest

from damflow_core.assets.store import SqliteAssetStore
from damflow_core.assets.types import AiData, Asset
from damflow_core.errors import NotFoundError, RecoverableError
from damflow_core.indexing.embeddings import EmbeddingIndexer
from damflow_core.indexing.query_expansion import QueryExpander
from damflow_core.search.service import (
    SearchService,
    click_boost,
    cosine_distances,
    name_score,
    recency_bonus,
    semantic_score,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
OLD = NOW - timedelta(days=90)


def _asset(
    asset_id: str,
    name: str,
    *,
    mime_type: str = "image/jpeg",
    created_at: datetime = OLD,
    tags: list[str] | None = None,
    colors: list[str] | None = None,
    embedding: list[float] | None = None,
) -> Asset:
    ai_data = None
    if tags is not None or colors is not None:
        ai_data = AiData(tags=tags or [], colors=colors or [])
    return Asset(
        id=asset_id,
        filename=f"{asset_id}.bin",
        original_name=name,
        mime_type=mime_type,
        size=1,
        path=f"file:///storage/originals/{asset_id}.bin",
        created_at=created_at,
        ai_data=ai_data,
        embedding=embedding,
    )


@pytest.fixture
def store(config) -> SqliteAssetStore:
    return SqliteAssetStore(config.database_path)


def _service(config, store, fake_client=None, *, expander=False) -> SearchService:
    indexer = None
    query_expander = None
    if fake_client is not None:
        indexer = EmbeddingIndexer(config, fake_client, store)
        if expander:
            query_expander = QueryExpander(config, fake_client)
    return SearchService(
        config,
        store,
        indexer,
        query_expander,
        clock=lambda: NOW,
    )


def _ids(assets: list[Asset]) -> list[str]:
    return [asset.id for asset in assets]


def test_scoring_helpers():
    assert name_score("Forklift.JPG", "forklift") == 100.0
    assert name_score("forklift-training.png", "forklift") == 70.0
    assert name_score("safety forklift.pdf", "forklift") == 40.0
    assert name_score("poster.jpg", "forklift") == 0.0
    assert recency_bonus(NOW, NOW) == pytest.approx(10.0)
    assert recency_bonus(NOW - timedelta(days=15), NOW) == pytest.approx(5.0)
    assert recency_bonus(OLD, NOW) == 0.0
    assert recency_bonus(NOW + timedelta(days=1), NOW) == pytest.approx(10.0)
    assert semantic_score(0.0) == pytest.approx(50.0)
    assert click_boost(0) == 0.0
    assert click_boost(9) == pytest.approx(10.0)
    distances = cosine_distances([1.0, 0.0], [[2.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
    assert distances.tolist() == pytest.approx([0.0, 1.0, 1.0])
    with pytest.raises(ValueError):
        cosine_distances([1.0, 0.0], [[1.0, 0.0, 0.0]])


def test_empty_query_browses_newest_first(config, store):
    store.create(_asset("old", "a.jpg", created_at=OLD))
    store.create(_asset("new", "b.jpg", created_at=NOW))
    response = _service(config, store).search("   ")
    assert _ids(response.results) == ["new", "old"]
    assert response.is_fallback is False
    assert store.search_log_count() == 0


def test_keyword_ranking(config, store):
    store.create(_asset("exact", "Forklift.jpg"))
    store.create(_asset("prefix", "forklift-training.png"))
    store.create(_asset("contains", "safety forklift.pdf"))
    store.create(_asset("tagged", "poster.jpg", tags=["Forklift"]))
    store.create(_asset("other", "poster2.jpg", tags=["ladder"]))

    response = _service(config, store).search("Forklift")

    assert _ids(response.results) == ["exact", "prefix", "contains", "tagged"]
    assert response.is_fallback is False
    assert store.search_log_count() == 1


def test_recency_breaks_ties(config, store):
    store.create(_asset("older", "demo one.jpg", created_at=NOW - timedelta(days=20)))
    store.create(_asset("newer", "demo two.jpg", created_at=NOW - timedelta(days=1)))
    assert _ids(_service(config, store).search("demo").results) == ["newer", "older"]


def test_no_match_falls_back_to_recent(config, store):
    store.create(_asset("a", "poster.jpg", created_at=OLD))
    store.create(_asset("b", "banner.jpg", created_at=NOW))

    response = _service(config, store).search("zebra")

    assert response.is_fallback is True
    assert _ids(response.results) == ["b", "a"]
    assert response.scored == []
    assert store.search_log_count() == 1


def test_short_terms_are_expanded(config, store, fake_client):
    fake_client.expansions = {"demo": ["walkthrough"]}
    store.create(_asset("walk", "intro.mp4", tags=["walkthrough"]))

    plain = _service(config, store).search("demo")
    expanded = _service(config, store, fake_client, expander=True).search("demo")

    assert plain.is_fallback is True
    assert expanded.is_fallback is False
    assert _ids(expanded.results) == ["walk"]


def test_vector_matches_without_keywords(config, store, fake_client):
    store.create(_asset("near", "zzz.jpg", embedding=[1.0, 0.0, 0.0]))
    store.create(_asset("far", "yyy.jpg", embedding=[0.0, 1.0, 0.0]))

    response = _service(config, store, fake_client).search("onboarding")

    assert _ids(response.results) == ["near"]
    assert response.scored[0].reasons == ("vector",)
    assert response.scored[0].score == pytest.approx(50.0)
    assert fake_client.embedded == ["onboarding"]


def test_vector_and_keyword_scores_add(config, store, fake_client):
    store.create(_asset("both", "onboarding.jpg", embedding=[1.0, 0.0, 0.0]))
    response = _service(config, store, fake_client).search("onboarding")
    assert response.scored[0].reasons == ("vector", "keyword")
    assert response.scored[0].score == pytest.approx(150.0)


def test_embedding_failure_degrades_to_keywords(config, store, fake_client):
    fake_client.embed_error = RecoverableError("embeddings unavailable")
    store.create(_asset("kw", "onboarding.jpg", embedding=[1.0, 0.0, 0.0]))
    response = _service(config, store, fake_client).search("onboarding")
    assert _ids(response.results) == ["kw"]
    assert response.scored[0].reasons == ("keyword",)


def test_clicks_boost_ranking(config, store):
    store.create(_asset("a", "demo-a.jpg", created_at=OLD + timedelta(days=1)))
    store.create(_asset("b", "demo-b.jpg", created_at=OLD))
    service = _service(config, store)
    assert _ids(service.search("demo").results) == ["a", "b"]

    for _ in range(9):
        service.track_click("b", query="  DEMO ")
    service.track_click("a", query="unrelated")

    response = service.search("demo")
    assert _ids(response.results) == ["b", "a"]
    assert response.scored[0].reasons == ("keyword", "clicks")


def test_filters_apply_to_search(config, store):
    store.create(_asset("img", "demo.jpg", colors=["Blue"]))
    store.create(_asset("vid", "demo.mp4", mime_type="video/mp4", colors=["Red"]))
    service = _service(config, store)
    assert _ids(service.search("demo", asset_type="video").results) == ["vid"]
    assert _ids(service.search("demo", color="blue").results) == ["img"]


def test_related_by_embedding(config, store):
    store.create(_asset("target", "t.jpg", embedding=[1.0, 0.0, 0.0]))
    store.create(_asset("close", "c.jpg", embedding=[0.9, 0.1, 0.0]))
    store.create(_asset("closest", "d.jpg", embedding=[1.0, 0.01, 0.0]))
    store.create(_asset("far", "f.jpg", embedding=[0.0, 1.0, 0.0]))
    store.create(_asset("trashed", "x.jpg", embedding=[1.0, 0.0, 0.0]))
    store.soft_delete("trashed")

    related = _service(config, store).related("target")
    assert _ids(related) == ["closest", "close"]


def test_related_by_tag_overlap(config, store):
    store.create(_asset("target", "t.jpg", tags=["a", "b", "c"]))
    store.create(_asset("strong", "s.jpg", tags=["A", "b"]))
    store.create(_asset("weak", "w.jpg", tags=["c", "d", "e", "f"]))
    store.create(_asset("none", "n.jpg", tags=["z"]))
    store.create(_asset("bare", "b.jpg"))

    assert _ids(_service(config, store).related("target")) == ["strong", "weak"]


def test_related_edge_cases(config, store):
    store.create(_asset("lonely", "l.jpg"))
    service = _service(config, store)
    assert service.related("lonely") == []
    with pytest.raises(NotFoundError):
        service.related("missing")


def test_click_on_missing_asset(config, store):
    with pytest.raises(NotFoundError):
        _service(config, store).track_click("missing")
