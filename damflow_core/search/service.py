from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import numpy as np

from damflow_core.assets.store import SqliteAssetStore
from damflow_core.assets.types import Asset
from damflow_core.config import Config
from damflow_core.errors import DamflowError
from damflow_core.indexing.embeddings import EmbeddingIndexer
from damflow_core.indexing.query_expansion import QueryExpander, should_expand
from damflow_core.logging import get_logger

logger = get_logger(__name__)

BROWSE_LIMIT = 2000
RELATED_LIMIT = 20
VECTOR_CANDIDATES = 100

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


@dataclass(frozen=True)
class ScoredAsset:
    asset: Asset
    score: float
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class SearchResponse:
    results: list[Asset]
    is_fallback: bool = False
    scored: list[ScoredAsset] = field(default_factory=list)


def cosine_distances(query: list[float], vectors: list[list[float]]) -> np.ndarray:
    if not vectors:
        return np.zeros(0, dtype=np.float32)
    matrix = np.asarray(vectors, dtype=np.float32)
    target = np.asarray(query, dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[1] != target.shape[0]:
        raise ValueError("Embedding dimensions do not match")
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(target)
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = np.where(norms > 0, matrix @ target / norms, 0.0)
    return 1.0 - similarity


def name_score(original_name: str, term: str) -> float:
    stem = _EXTENSION_RE.sub("", original_name.lower())
    if stem == term:
        return 100.0
    if stem.startswith(term):
        return 70.0
    if term in stem:
        return 40.0
    return 0.0


def recency_bonus(created_at: datetime, now: datetime) -> float:
    days_old = (now - created_at).total_seconds() / 86400.0
    if days_old < 0:
        days_old = 0.0
    if days_old >= 30:
        return 0.0
    return 10.0 * (1.0 - days_old / 30.0)


def semantic_score(distance: float) -> float:
    return 50.0 * math.exp(-5.0 * distance)


def click_boost(count: int) -> float:
    return math.log10(count + 1) * 10.0


class SearchService:
    def __init__(
        self,
        config: Config,
        store: SqliteAssetStore,
        indexer: EmbeddingIndexer | None = None,
        expander: QueryExpander | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.indexer = indexer
        self.expander = expander
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def browse(
        self,
        *,
        asset_type: str | None = None,
        color: str | None = None,
        limit: int = BROWSE_LIMIT,
    ) -> list[Asset]:
        return self.store.list_recent(limit=limit, asset_type=asset_type, color=color)

    def search(
        self,
        query: str | None,
        *,
        asset_type: str | None = None,
        color: str | None = None,
        user_id: str | None = None,
    ) -> SearchResponse:
        term = (query or "").strip().lower()
        if not term:
            return SearchResponse(
                results=self.browse(asset_type=asset_type, color=color)
            )

        candidates = self.store.list_active(asset_type=asset_type, color=color)
        scores: dict[str, ScoredAsset] = {}
        for item in self._vector_matches(term, candidates):
            scores[item.asset.id] = item
        terms = self._search_terms(term)
        now = self._clock()
        for asset in candidates:
            lowered_name = asset.original_name.lower()
            enrichment = asset.enrichment_text()
            if not any(t in lowered_name or t in enrichment for t in terms):
                continue
            score = name_score(asset.original_name, term)
            if term in enrichment:
                score += 30.0
            score += recency_bonus(asset.created_at, now)
            existing = scores.get(asset.id)
            if existing is not None:
                scores[asset.id] = ScoredAsset(
                    asset=asset,
                    score=existing.score + score,
                    reasons=existing.reasons + ("keyword",),
                )
            else:
                scores[asset.id] = ScoredAsset(
                    asset=asset, score=score, reasons=("keyword",)
                )

        counts = self.store.click_counts(scores, query=term)
        for asset_id, count in counts.items():
            item = scores[asset_id]
            scores[asset_id] = ScoredAsset(
                asset=item.asset,
                score=item.score + click_boost(count),
                reasons=item.reasons + ("clicks",),
            )

        ranked = sorted(
            scores.values(),
            key=lambda item: (item.score, item.asset.created_at),
            reverse=True,
        )
        is_fallback = not ranked
        results = [item.asset for item in ranked]
        if is_fallback:
            results = self.store.list_recent(limit=self.config.search_fallback_limit)
        self._log_search(term, len(ranked), is_fallback, user_id)
        return SearchResponse(results=results, is_fallback=is_fallback, scored=ranked)

    def related(self, asset_id: str, *, limit: int = RELATED_LIMIT) -> list[Asset]:
        target = self.store.require(asset_id)
        candidates = [
            asset for asset in self.store.list_active() if asset.id != asset_id
        ]
        if target.embedding:
            with_vectors = [asset for asset in candidates if asset.embedding]
            try:
                distances = cosine_distances(
                    target.embedding,
                    [asset.embedding or [] for asset in with_vectors],
                )
            except ValueError as exc:
                logger.warning(
                    "Related lookup skipped mismatched embeddings",
                    extra={"asset_id": asset_id, "error_message": str(exc)},
                )
                return []
            ranked = sorted(
                (
                    (float(distance), asset)
                    for distance, asset in zip(distances, with_vectors)
                    if distance < self.config.related_max_distance
                ),
                key=lambda pair: pair[0],
            )
            return [asset for _, asset in ranked[:limit]]
        return self._related_by_tags(target, candidates, limit)

    def track_click(
        self,
        asset_id: str,
        *,
        query: str | None = None,
        position: int | None = None,
        user_id: str | None = None,
    ) -> None:
        cleaned = query.strip().lower() if query else None
        self.store.track_click(
            asset_id,
            query=cleaned or None,
            position=position,
            user_id=user_id,
        )

    def _search_terms(self, term: str) -> list[str]:
        terms = [term]
        if self.expander is not None and should_expand(term):
            for expanded in self.expander.expand(term):
                if expanded and expanded not in terms:
                    terms.append(expanded)
        return terms

    def _vector_matches(self, term: str, candidates: list[Asset]) -> list[ScoredAsset]:
        if self.indexer is None or len(term) <= 2:
            return []
        with_vectors = [asset for asset in candidates if asset.embedding]
        if not with_vectors:
            return []
        try:
            query_vector = self.indexer.embed_text(term)
            if query_vector is None:
                return []
            distances = cosine_distances(
                query_vector,
                [asset.embedding or [] for asset in with_vectors],
            )
        except (DamflowError, ValueError) as exc:
            logger.warning(
                "Vector search failed; using keyword matches only",
                extra={"query": term, "error_message": str(exc)},
            )
            return []
        order = np.argsort(distances)[:VECTOR_CANDIDATES]
        matches: list[ScoredAsset] = []
        for index in order:
            distance = float(distances[index])
            if distance < self.config.vector_match_distance:
                matches.append(
                    ScoredAsset(
                        asset=with_vectors[int(index)],
                        score=semantic_score(distance),
                        reasons=("vector",),
                    )
                )
        return matches

    def _related_by_tags(
        self,
        target: Asset,
        candidates: list[Asset],
        limit: int,
    ) -> list[Asset]:
        if target.ai_data is None or not target.ai_data.tags:
            return []
        wanted = {tag.lower() for tag in target.ai_data.tags}
        scored: list[tuple[float, Asset]] = []
        for asset in candidates:
            if asset.ai_data is None:
                continue
            tags = {tag.lower() for tag in asset.ai_data.tags}
            overlap = len(wanted & tags)
            if overlap:
                scored.append((overlap / len(wanted | tags), asset))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [asset for _, asset in scored[:limit]]

    def _log_search(
        self,
        term: str,
        result_count: int,
        is_fallback: bool,
        user_id: str | None,
    ) -> None:
        logger.info(
            "Search executed",
            extra={
                "query": term,
                "result_count": result_count,
                "is_fallback": is_fallback,
            },
        )
        try:
            self.store.log_search(
                term,
                result_count=result_count,
                is_fallback=is_fallback,
                user_id=user_id,
            )
        except DamflowError as exc:
            logger.warning(
                "Search log write failed",
                extra={"query": term, "error_message": str(exc)},
            )
