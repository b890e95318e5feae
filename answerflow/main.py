from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache, partial
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from answerflow.config import get_settings
from answerflow.models import AskRequest, HealthResponse, Identity
from answerflow.pipelines.answer import AnswerPipeline
from answerflow.services.brave_search import BraveSearchService
from answerflow.services.llm_runtime import ChatModelRegistry
from answerflow.services.search import SearchEngineFactory
from answerflow.services.serper_search import SerperSearch
from answerflow.services.store import InMemoryResultCache, InMemoryUsageCounter, SlidingWindowRateLimiter
from answerflow.services.vector_search import VectorSearch
from answerflow.streaming import StreamEmitter

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Waiting for background cache and usage writes")
    await get_pipeline().drain_background()


app = FastAPI(
    title="Answerflow",
    version="0.1.0",
    description="Answers questions from web and personal search results with a streamed LLM answer.",
    lifespan=lifespan,
)


@lru_cache
def get_search_engine() -> SearchEngineFactory:
    settings = get_settings()
    if settings.search_provider == "brave":
        return partial(BraveSearchService, settings)
    return partial(SerperSearch, settings)


@lru_cache
def get_chat_models() -> ChatModelRegistry:
    return ChatModelRegistry(get_settings())


@lru_cache
def get_pipeline() -> AnswerPipeline:
    settings = get_settings()
    return AnswerPipeline(
        settings=settings,
        web_search=get_search_engine(),
        vector_search=partial(VectorSearch, settings),
        chat_models=get_chat_models(),
        cache=InMemoryResultCache(settings.cache_ttl_seconds),
        usage=InMemoryUsageCounter(),
        rate_limiter=SlidingWindowRateLimiter(
            settings.rate_limit_requests, settings.rate_limit_window_seconds
        ),
    )


def get_identity(request: Request) -> Identity:
    """The auth layer in front of the service sets ``X-User-Id`` for signed-in users."""
    user_id = request.headers.get("x-user-id") or None
    forwarded = request.headers.get("x-forwarded-for") or "127.0.0.1"
    return Identity(user_id=user_id, client_ip=forwarded.split(",")[0].strip())


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.post("/ask")
async def ask_endpoint(
    request: AskRequest,
    identity: Identity = Depends(get_identity),
    pipeline: AnswerPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    if not await pipeline.admit(identity):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    if not pipeline.is_valid_model(request.model):
        raise HTTPException(status_code=400, detail="Please choose a valid model")

    emitter = StreamEmitter()

    async def event_stream() -> AsyncIterator[str]:
        task = asyncio.create_task(
            pipeline.answer(
                query=request.query,
                use_cache=request.use_cache,
                user_id=identity.user_id,
                mode=request.mode,
                model=request.model,
                category=request.source,
                emitter=emitter,
            )
        )
        try:
            async for event in emitter:
                if not event.is_terminal:
                    yield event.to_sse()
            await task
        finally:
            if not task.done():
                emitter.cancel()
                task.cancel()
                await asyncio.wait([task])

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
