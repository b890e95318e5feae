from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from answerflow.config import Settings
from answerflow.models import AskMode, Category, SearchOptions, SearchResult
from answerflow.pipelines.answer import AnswerPipeline
from answerflow.services.llm_runtime import ChatModelRegistry
from answerflow.services.store import InMemoryResultCache, InMemoryUsageCounter, SlidingWindowRateLimiter
from answerflow.streaming import StreamEmitter, StreamEvent

ANSWER_MODEL = "gpt-4o-mini"
RELATED_MODEL = "related-model"


class FakeSearch:
    def __init__(self, engine: "FakeSearchEngine", category: Optional[Category]):
        self._engine = engine
        self._category = category

    async def search(self, query: str) -> SearchResult:
        self._engine.calls.append((self._category, query))
        return self._engine.results.get(self._category, SearchResult())


class FakeSearchEngine:
    """Stands in for the web search factory; results are keyed by category."""

    def __init__(self, results: Optional[Dict[Optional[Category], SearchResult]] = None):
        self.results = results or {}
        self.calls: List[Tuple[Optional[Category], str]] = []

    def __call__(self, options: SearchOptions) -> FakeSearch:
        return FakeSearch(self, options.category)


class FakeVectorSearch:
    def __init__(self, result: Optional[SearchResult] = None):
        self.result = result or SearchResult()
        self.calls: List[Tuple[str, str]] = []

    def __call__(self, user_id: str) -> "FakeVectorSearch":
        self._user_id = user_id
        return self

    async def search(self, query: str) -> SearchResult:
        self.calls.append((self._user_id, query))
        return self.result


class FakeChatModel:
    def __init__(self, tokens: Sequence[str] = (), error: Optional[Exception] = None):
        self.tokens = list(tokens)
        self.error = error
        self.calls: List[Tuple[str, list]] = []

    async def chat_stream(self, messages, on_token, model: str) -> None:
        self.calls.append((model, messages))
        for token in self.tokens:
            await on_token(token, False)
        if self.error is not None:
            raise self.error
        await on_token("", True)


class PipelineHarness:
    def __init__(self) -> None:
        self.settings = Settings(related_model=RELATED_MODEL, image_limit=8)
        self.web = FakeSearchEngine()
        self.vector = FakeVectorSearch()
        self.answer_model = FakeChatModel(["Hi", " there"])
        self.related_model = FakeChatModel(["Q1?"])
        self.cache = InMemoryResultCache(ttl_seconds=3600)
        self.usage = InMemoryUsageCounter()
        self.limiter = SlidingWindowRateLimiter(limit=3, window_seconds=86400)
        self._pipeline: Optional[AnswerPipeline] = None

    @property
    def pipeline(self) -> AnswerPipeline:
        if self._pipeline is None:
            registry = ChatModelRegistry(
                self.settings,
                providers={
                    ANSWER_MODEL: lambda: self.answer_model,
                    RELATED_MODEL: lambda: self.related_model,
                },
            )
            self._pipeline = AnswerPipeline(
                settings=self.settings,
                web_search=self.web,
                vector_search=self.vector,
                chat_models=registry,
                cache=self.cache,
                usage=self.usage,
                rate_limiter=self.limiter,
            )
        return self._pipeline

    def run(
        self,
        query: str = "hello",
        use_cache: bool = False,
        user_id: Optional[str] = None,
        category: Category = Category.ALL,
        model: str = ANSWER_MODEL,
    ) -> List[StreamEvent]:
        async def _run() -> List[StreamEvent]:
            emitter = StreamEmitter()
            await self.pipeline.answer(query, use_cache, user_id, AskMode.SIMPLE, model, category, emitter)
            events = [event async for event in emitter]
            await self.pipeline.drain_background()
            return events

        return asyncio.run(_run())


@pytest.fixture()
def harness() -> PipelineHarness:
    return PipelineHarness()
