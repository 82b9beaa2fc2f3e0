"""Image sourcing collaborator."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class ImageCandidate(BaseModel):
    url: str
    confidence: float = 0.0
    source: str = "search"
    alt_text: Optional[str] = None


class ImageSearcher(Protocol):
    async def search_images(self, item: dict[str, Any]) -> list[ImageCandidate]: ...


class NullImageSearcher:
    """Searcher used when no image service is configured."""

    async def search_images(self, item: dict[str, Any]) -> list[ImageCandidate]:
        return []


class HttpImageSearcher:
    """Query a JSON image search endpoint.

    The endpoint receives ``{"query", "sku", "brand"}`` and answers with
    ``{"images": [{"url", "confidence", "source"}, ...]}``. Candidates that do
    not validate are dropped.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport)

    async def search_images(self, item: dict[str, Any]) -> list[ImageCandidate]:
        query = " ".join(
            str(part) for part in (item.get("brand"), item.get("title")) if part
        )
        async with self._client() as client:
            resp = await client.post(
                self._url,
                json={"query": query, "sku": item.get("sku"), "brand": item.get("brand")},
            )
            resp.raise_for_status()
            data = resp.json()

        raw_images = data.get("images", []) if isinstance(data, dict) else data
        candidates = []
        for raw in raw_images or []:
            try:
                candidates.append(ImageCandidate.model_validate(raw))
            except ValidationError:
                logger.debug(f"Dropping invalid image candidate: {raw!r}")
        return sorted(candidates, key=lambda c: c.confidence, reverse=True)
