from __future__ import annotations

from dataclasses import dataclass

from damflow_core.assets.store import SqliteAssetStore
from damflow_core.config import Config
from damflow_core.enrichment.analysis import AnalysisEngine
from damflow_core.enrichment.client import ModelClient, OpenAIModelClient
from damflow_core.indexing.embeddings import EmbeddingIndexer
from damflow_core.indexing.query_expansion import QueryExpander
from damflow_core.ingestion.coordinator import EventSink, IngestCoordinator
from damflow_core.maintenance.backfill import BackfillRunner
from damflow_core.maintenance.trash import TrashService
from damflow_core.search.service import SearchService
from damflow_core.storage.object_store import ObjectStore


@dataclass
class Runtime:
    config: Config
    store: SqliteAssetStore
    object_store: ObjectStore
    client: ModelClient
    coordinator: IngestCoordinator
    search: SearchService
    trash: TrashService
    backfill: BackfillRunner

    def close(self, wait: bool = True) -> None:
        self.coordinator.shutdown(wait=wait)


def build_runtime(
    config: Config,
    *,
    client: ModelClient | None = None,
    object_store: ObjectStore | None = None,
    event_sink: EventSink | None = None,
    backfill_workers: int = 2,
) -> Runtime:
    """Wire every component from one config; tests inject a fake model client."""
    store = SqliteAssetStore(config.database_path)
    objects = object_store or ObjectStore.from_base_uri(
        config.storage_root,
        config.public_url_base,
    )
    model_client = client or OpenAIModelClient(config)
    indexer = EmbeddingIndexer(config, model_client, store)
    coordinator = IngestCoordinator(
        config,
        store,
        objects,
        AnalysisEngine(config, model_client),
        indexer,
        event_sink=event_sink,
    )
    return Runtime(
        config=config,
        store=store,
        object_store=objects,
        client=model_client,
        coordinator=coordinator,
        search=SearchService(
            config,
            store,
            indexer,
            QueryExpander(config, model_client),
        ),
        trash=TrashService(config, store, objects),
        backfill=BackfillRunner(
            config,
            store,
            objects,
            coordinator,
            workers=backfill_workers,
        ),
    )
