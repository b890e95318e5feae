from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from answerflow.config import Settings
from answerflow.models import SearchResult, TextSource
from answerflow.services.search import http_retrying, truncate_query

logger = logging.getLogger(__name__)


class VectorSearch:
    """Semantic search over one identity's personal index.

    Talks to an Upstash-style vector REST API: documents live in a namespace
    named after the user and carry ``title``/``url``/``content`` metadata.
    """

    def __init__(
        self,
        settings: Settings,
        namespace: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._namespace = namespace
        self._transport = transport

    async def search(self, query: str) -> SearchResult:
        if not self._settings.vector_endpoint:
            logger.debug("Vector search disabled; no endpoint configured")
            return SearchResult()

        url = f"{self._settings.vector_endpoint.rstrip('/')}/query-data/{self._namespace}"
        body = {
            "data": truncate_query(query, self._settings.max_query_length),
            "topK": self._settings.vector_top_k,
            "includeMetadata": True,
        }
        headers = {"Authorization": f"Bearer {self._settings.vector_token}"}

        async def _do_request() -> Dict[str, Any]:
            async with httpx.AsyncClient(
                timeout=self._settings.fetch_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
                return response.json()

        try:
            async for attempt in http_retrying(self._settings):
                with attempt:
                    payload = await _do_request()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Vector search failed for namespace %s: %s", self._namespace, exc)
            return SearchResult()

        texts: List[TextSource] = []
        for match in payload.get("result") or []:
            metadata = match.get("metadata") or {}
            if not metadata.get("url") or not metadata.get("content"):
                continue
            texts.append(
                TextSource(
                    title=metadata.get("title", ""),
                    url=metadata["url"],
                    content=metadata["content"],
                )
            )
        return SearchResult(texts=texts)
