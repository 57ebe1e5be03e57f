from __future__ import annotations

import math
from dataclasses import dataclass

from damflow_core.assets.store import SqliteAssetStore
from damflow_core.assets.types import AiData
from damflow_core.config import Config
from damflow_core.enrichment.client import ModelClient
from damflow_core.errors import DamflowError
from damflow_core.logging import get_logger

logger = get_logger(__name__)


def build_embedding_text(
    ai_data: AiData,
    *,
    max_chars: int = 8000,
    transcript_chars: int | None = None,
) -> str:
    transcript = ai_data.transcript or ""
    if transcript_chars is not None:
        transcript = transcript[:transcript_chars]
    parts = [
        ai_data.description or "",
        ", ".join(ai_data.tags),
        ai_data.educational_context or "",
        ai_data.topic or "",
        ai_data.instructional_approach or "",
        transcript,
    ]
    text = " ".join(part for part in parts if part)
    text = " ".join(text.replace("\r", " ").replace("\n", " ").split())
    return text[:max_chars]


def _valid_vector(vector: list[float]) -> bool:
    return bool(vector) and all(math.isfinite(value) for value in vector)


@dataclass(frozen=True)
class IndexResult:
    ai_data: AiData
    embedding: list[float] | None

    @property
    def indexed(self) -> bool:
        return self.embedding is not None


class EmbeddingIndexer:
    def __init__(
        self,
        config: Config,
        client: ModelClient,
        store: SqliteAssetStore,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store

    def embed_text(self, text: str) -> list[float] | None:
        cleaned = " ".join(text.split())[: self.config.embedding_text_chars]
        if not cleaned:
            return None
        vector = self.client.embed(cleaned)
        if not _valid_vector(vector):
            return None
        return vector

    def index(self, asset_id: str, ai_data: AiData) -> IndexResult:
        """Persist ``ai_data`` together with its embedding when one is available.

        Embedding failures are logged; ``ai_data`` is written regardless.
        """
        embedding: list[float] | None = None
        text = build_embedding_text(
            ai_data,
            max_chars=self.config.embedding_text_chars,
        )
        try:
            embedding = self.embed_text(text)
        except DamflowError as exc:
            logger.warning(
                "Embedding failed; asset falls back to keyword search",
                extra={
                    "asset_id": asset_id,
                    "stage": "index",
                    "error_message": str(exc),
                },
            )
        self.store.update_enrichment(asset_id, ai_data, embedding)
        return IndexResult(ai_data=ai_data, embedding=embedding)
