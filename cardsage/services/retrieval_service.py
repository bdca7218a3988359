"""
Retrieval: query an Azure AI Search index and normalize hits.

Responsibility: Translate a free-text query into ranked SearchHit snippets.
Hits keep the backend's relevance order; top_k is an upper bound only.
"""

import logging
import re
from functools import lru_cache
from typing import Any, Callable

import httpx

from cardsage.agent.types import SearchHit
from cardsage.core.config import (
    AZURE_SEARCH_API_VERSION,
    AZURE_SEARCH_ENDPOINT,
    AZURE_SEARCH_INDEX_NAME,
    AZURE_SEARCH_INDEX_NAME_RULES,
    AZURE_SEARCH_KEY,
    INFORMATION_TOP_K,
    RETRIEVAL_TIMEOUT,
    RULES_TOP_K,
)
from cardsage.core.errors import RetrievalUnavailableError

logger = logging.getLogger(__name__)

# Card documents are stored as "<card id>.json"
_CARD_TITLE_RE = re.compile(r"^(\d+)\.json$")

Normalizer = Callable[[dict[str, Any]], SearchHit | None]


def _score(record: dict[str, Any]) -> float:
    try:
        return float(record.get("@search.score") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def normalize_chunk(record: dict[str, Any]) -> SearchHit | None:
    """Rules index: score + chunk text, no id."""
    return SearchHit(score=_score(record), text=record.get("chunk") or "")


def normalize_card(record: dict[str, Any]) -> SearchHit | None:
    """Card index: id parsed from the document title; records without one are skipped."""
    match = _CARD_TITLE_RE.match(str(record.get("title") or ""))
    if not match:
        return None
    return SearchHit(score=_score(record), text=record.get("chunk") or "", id=int(match.group(1)))


class RetrievalAdapter:
    """
    One search index behind one result cap.

    Raises RetrievalUnavailableError on timeouts, transport and auth errors.
    Zero matches is an empty list, not an error.
    """

    def __init__(
        self,
        name: str,
        index_name: str,
        *,
        top_k: int,
        endpoint: str = AZURE_SEARCH_ENDPOINT,
        api_key: str = AZURE_SEARCH_KEY,
        api_version: str = AZURE_SEARCH_API_VERSION,
        timeout: float = RETRIEVAL_TIMEOUT,
        normalizer: Normalizer = normalize_chunk,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        self.name = name
        self.index_name = index_name
        self.top_k = top_k
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.api_version = api_version
        self.timeout = timeout
        self.normalizer = normalizer
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.endpoint}/indexes/{self.index_name}/docs/search"

    async def search(self, query: str, top_k: int | None = None) -> list[SearchHit]:
        limit = self.top_k if top_k is None else max(0, min(top_k, self.top_k))
        q = (query or "").strip()
        logger.info("[retrieval:%s] IN  query=%r top_k=%d", self.name, q, limit)
        if not q or limit == 0:
            logger.info("[retrieval:%s] OUT empty query or zero limit, returning []", self.name)
            return []
        if not self.endpoint:
            raise RetrievalUnavailableError("AZURE_SEARCH_ENDPOINT must be set in .env")

        payload = {"search": q, "top": limit, "queryType": "simple"}
        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    params={"api-version": self.api_version},
                    json=payload,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            logger.warning("[retrieval:%s] timed out after %.1fs", self.name, self.timeout)
            raise RetrievalUnavailableError(f"Search index {self.index_name!r} timed out") from e
        except httpx.HTTPError as e:
            logger.warning("[retrieval:%s] request failed: %s", self.name, e)
            raise RetrievalUnavailableError(f"Search index {self.index_name!r} unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise RetrievalUnavailableError(
                f"Search index {self.index_name!r} rejected credentials ({response.status_code})"
            )
        if response.status_code != 200:
            logger.warning(
                "[retrieval:%s] search error %s: %s", self.name, response.status_code, response.text[:200]
            )
            raise RetrievalUnavailableError(
                f"Search index {self.index_name!r} returned {response.status_code}"
            )
        try:
            records = response.json().get("value") or []
        except (ValueError, AttributeError) as e:
            raise RetrievalUnavailableError(f"Search index {self.index_name!r} sent an invalid body") from e

        hits: list[SearchHit] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            hit = self.normalizer(record)
            if hit is not None:
                hits.append(hit)
            if len(hits) >= limit:
                break
        logger.info(
            "[retrieval:%s] OUT hits=%d first_scores=%s",
            self.name, len(hits), [round(h.score, 4) for h in hits[:5]],
        )
        return hits


def information_adapter(**overrides: Any) -> RetrievalAdapter:
    """Broad card-content index."""
    params: dict[str, Any] = {"top_k": INFORMATION_TOP_K, "normalizer": normalize_card}
    params.update(overrides)
    return RetrievalAdapter("information", AZURE_SEARCH_INDEX_NAME, **params)


def rules_adapter(**overrides: Any) -> RetrievalAdapter:
    """Rulings index; fewer, more focused hits."""
    params: dict[str, Any] = {"top_k": RULES_TOP_K, "normalizer": normalize_chunk}
    params.update(overrides)
    return RetrievalAdapter("rules", AZURE_SEARCH_INDEX_NAME_RULES, **params)


@lru_cache(maxsize=1)
def get_information_adapter() -> RetrievalAdapter:
    """Process-wide card-index adapter (FastAPI dependency for the search endpoint)."""
    return information_adapter()
