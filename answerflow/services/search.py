from __future__ import annotations

from typing import Callable, Iterable, List, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from answerflow.config import Settings
from answerflow.models import ImageSource, SearchOptions, SearchResult


class SearchSource(Protocol):
    async def search(self, query: str) -> SearchResult:
        """Return text and image results. Upstream failures yield an empty result."""


SearchEngineFactory = Callable[[SearchOptions], SearchSource]
VectorSearchFactory = Callable[[str], SearchSource]


def truncate_query(query: str, limit: int) -> str:
    return query[:limit]


def secure_images(images: Iterable[ImageSource], limit: int) -> List[ImageSource]:
    """Keep only images served over https, at most ``limit`` of them."""
    return [image for image in images if image.image_url.startswith("https://")][:limit]


def http_retrying(settings: Settings) -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(max(settings.search_retry_attempts, 1)),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
