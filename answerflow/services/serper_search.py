from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from answerflow.config import Settings
from answerflow.models import Category, ImageSource, SearchOptions, SearchResult, TextSource
from answerflow.services.search import http_retrying, truncate_query

logger = logging.getLogger(__name__)

_ENDPOINTS = {
    Category.IMAGES: "images",
    Category.NEWS: "news",
}


class SerperSearch:
    """Google results through google.serper.dev; the endpoint follows the first category."""

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
        path = _ENDPOINTS.get(self._options.category, "search")
        return f"{self._settings.serper_endpoint.rstrip('/')}/{path}"

    async def search(self, query: str) -> SearchResult:
        body = {"q": truncate_query(query, self._settings.max_query_length)}
        headers = {
            "X-API-KEY": self._settings.serper_api_key,
            "Content-Type": "application/json",
        }

        async def _do_request() -> Dict[str, Any]:
            async with httpx.AsyncClient(
                timeout=self._settings.fetch_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
                return response.json()

        try:
            async for attempt in http_retrying(self._settings):
                with attempt:
                    payload = await _do_request()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Serper search failed for %s: %s", self.url, exc)
            return SearchResult()

        return SearchResult(texts=_parse_texts(payload), images=_parse_images(payload))


def _parse_texts(payload: Dict[str, Any]) -> List[TextSource]:
    texts: List[TextSource] = []

    graph = payload.get("knowledgeGraph") or {}
    graph_url = graph.get("descriptionLink") or graph.get("website")
    if graph_url and graph.get("description"):
        texts.append(TextSource(title=graph.get("title") or "", url=graph_url, content=graph["description"]))

    box = payload.get("answerBox") or {}
    box_snippet = box.get("snippet") or box.get("answer")
    if box.get("link") and box_snippet:
        texts.append(TextSource(title=box.get("title") or "", url=box["link"], content=box_snippet))

    for key in ("organic", "news"):
        for item in payload.get(key) or []:
            if not item.get("link"):
                continue
            texts.append(
                TextSource(
                    title=item.get("title") or "",
                    url=item["link"],
                    content=item.get("snippet") or "",
                )
            )
    return texts


def _parse_images(payload: Dict[str, Any]) -> List[ImageSource]:
    images: List[ImageSource] = []
    for item in payload.get("images") or []:
        if not item.get("imageUrl"):
            continue
        images.append(
            ImageSource(
                title=item.get("title") or "",
                url=item.get("link") or item["imageUrl"],
                image_url=item["imageUrl"],
            )
        )
    return images
