from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from answerflow.config import Settings
from answerflow.models import Category, ImageSource, SearchOptions, SearchResult, TextSource
from answerflow.services.search import http_retrying, truncate_query

logger = logging.getLogger(__name__)

_ENDPOINTS = {
    Category.IMAGES: "images/search",
    Category.NEWS: "news/search",
}


class BraveSearchService:
    def __init__(
        self,
        settings: Settings,
        options: Optional[SearchOptions] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._options = options or SearchOptions()
        self._transport = transport

    @property
    def url(self) -> str:
        path = _ENDPOINTS.get(self._options.category, "web/search")
        return f"{self._settings.brave_endpoint.rstrip('/')}/{path}"

    async def search(self, query: str) -> SearchResult:
        params = {
            "q": truncate_query(query, self._settings.max_query_length),
            "count": min(self._settings.brave_result_count, 20),
            "safesearch": self._settings.brave_safe_search,
        }
        headers = {
            "User-Agent": self._settings.user_agent,
            "Accept": "application/json",
            "X-Subscription-Token": self._settings.brave_api_key,
        }

        async def _do_request() -> Dict[str, Any]:
            async with httpx.AsyncClient(
                timeout=self._settings.fetch_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.get(
                    self.url,
                    params=params,
                    headers=headers,
                    follow_redirects=True,
                )
                response.raise_for_status()
                return response.json()

        try:
            async for attempt in http_retrying(self._settings):
                with attempt:
                    payload = await _do_request()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Brave search failed for %s: %s", self.url, exc)
            return SearchResult()

        if self._options.category == Category.IMAGES:
            return SearchResult(images=_parse_images(payload.get("results", [])))
        if self._options.category == Category.NEWS:
            return SearchResult(texts=_parse_texts(payload.get("results", [])))
        return SearchResult(texts=_parse_texts(payload.get("web", {}).get("results", [])))


def _parse_texts(results: List[Dict[str, Any]]) -> List[TextSource]:
    documents: List[TextSource] = []
    for item in results:
        url = item.get("url")
        title = item.get("title", "")
        if not url or not title:
            continue
        documents.append(TextSource(url=url, title=title, content=item.get("description") or ""))
    return documents


def _parse_images(results: List[Dict[str, Any]]) -> List[ImageSource]:
    images: List[ImageSource] = []
    for item in results:
        image_url = (item.get("properties") or {}).get("url")
        if not image_url:
            continue
        images.append(
            ImageSource(title=item.get("title", ""), url=item.get("url") or image_url, image_url=image_url)
        )
    return images
