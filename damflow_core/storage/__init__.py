from damflow_core.storage.object_store import ObjectStore
from damflow_core.storage.paths import (
    join_uri,
    key_from_url,
    original_key,
    preview_key,
    thumbnail_key,
)

__all__ = [
    "ObjectStore",
    "join_uri",
    "key_from_url",
    "original_key",
    "preview_key",
    "thumbnail_key",
]
