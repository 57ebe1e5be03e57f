from damflow_core.search.service import (
    ScoredAsset,
    SearchResponse,
    SearchService,
    cosine_distances,
)

__all__ = ["ScoredAsset", "SearchResponse", "SearchService", "cosine_distances"]
