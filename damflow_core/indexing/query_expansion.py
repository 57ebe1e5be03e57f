from __future__ import annotations

from damflow_core.config import Config
from damflow_core.enrichment.client import ModelClient
from damflow_core.enrichment.prompts import EXPANSION_SYSTEM_PROMPT, expansion_prompt
from damflow_core.errors import DamflowError
from damflow_core.indexing.ttl_cache import TtlCache
from damflow_core.logging import get_logger

logger = get_logger(__name__)

MAX_EXPANSIONS = 5


def should_expand(term: str) -> bool:
    cleaned = term.strip()
    return 2 < len(cleaned) < 6 and " " not in cleaned


class QueryExpander:
    def __init__(
        self,
        config: Config,
        client: ModelClient,
        cache: TtlCache[str, list[str]] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.cache = cache or TtlCache(config.query_expansion_ttl_seconds)

    def expand(self, term: str) -> list[str]:
        """Return ``[term, *related]``; falls back to ``[term]`` on any failure."""
        key = term.strip().lower()
        if not key:
            return []
        try:
            return list(self.cache.get_or_compute(key, lambda: self._fetch(key)))
        except DamflowError as exc:
            logger.warning(
                "Query expansion failed",
                extra={"query": key, "error_message": str(exc)},
            )
            return [key]

    def _fetch(self, term: str) -> list[str]:
        payload = self.client.complete_json(
            model=self.config.expansion_model_name,
            system=EXPANSION_SYSTEM_PROMPT,
            content=expansion_prompt(term),
            temperature=0.3,
            retry=True,
        )
        raw_terms = payload.get("terms")
        terms = [term]
        if isinstance(raw_terms, list):
            for value in raw_terms:
                if not isinstance(value, str):
                    continue
                cleaned = " ".join(value.split()).lower()
                if cleaned and cleaned not in terms:
                    terms.append(cleaned)
                if len(terms) > MAX_EXPANSIONS:
                    break
        return terms
