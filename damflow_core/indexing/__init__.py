from damflow_core.indexing.embeddings import (
    EmbeddingIndexer,
    IndexResult,
    build_embedding_text,
)
from damflow_core.indexing.query_expansion import QueryExpander, should_expand
from damflow_core.indexing.ttl_cache import TtlCache

__all__ = [
    "EmbeddingIndexer",
    "IndexResult",
    "QueryExpander",
    "TtlCache",
    "build_embedding_text",
    "should_expand",
]
