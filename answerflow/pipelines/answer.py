from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel

from answerflow.config import Settings
from answerflow.models import (
    AskMode,
    CachedResult,
    Category,
    Identity,
    ImageSource,
    SearchOptions,
    TextSource,
    cache_key,
)
from answerflow.prompts import build_messages
from answerflow.services.llm_runtime import ChatModelRegistry, Message
from answerflow.services.search import SearchEngineFactory, VectorSearchFactory, secure_images
from answerflow.services.store import RateLimiter, ResultCache, UsageCounter
from answerflow.streaming import EventKind, StreamCancelled, StreamEmitter

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "Some errors seem to have occurred, please retry"


class AnswerPipeline:
    """Cache-first search, streamed answer and related questions for one query.

    Every result reaches the caller through a :class:`StreamEmitter` in the
    order sources, images, answer tokens, backfilled images, related tokens,
    done. Cache writes and usage increments run as detached tasks that
    outlive the request.
    """

    def __init__(
        self,
        settings: Settings,
        web_search: SearchEngineFactory,
        vector_search: VectorSearchFactory,
        chat_models: ChatModelRegistry,
        cache: ResultCache,
        usage: UsageCounter,
        rate_limiter: RateLimiter,
    ) -> None:
        self._settings = settings
        self._web_search = web_search
        self._vector_search = vector_search
        self._chat_models = chat_models
        self._cache = cache
        self._usage = usage
        self._rate_limiter = rate_limiter
        self._background: Set[asyncio.Future] = set()

    def is_valid_model(self, model: str) -> bool:
        return self._chat_models.is_valid(model)

    async def admit(self, identity: Identity) -> bool:
        if identity.is_authenticated:
            return True
        return await self._rate_limiter.check(identity.client_ip)

    async def answer(
        self,
        query: str,
        use_cache: bool,
        user_id: Optional[str],
        mode: AskMode,
        model: str,
        category: Category,
        emitter: StreamEmitter,
    ) -> None:
        logger.info("Answering query (mode=%s, model=%s, category=%s)", mode.value, model, category.value)
        try:
            await self._answer(query, use_cache, user_id, model, category, emitter)
        except StreamCancelled:
            logger.info("Consumer disconnected; abandoning answer for model=%s", model)
        finally:
            await emitter.close()

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _answer(
        self,
        query: str,
        use_cache: bool,
        user_id: Optional[str],
        model: str,
        category: Category,
        emitter: StreamEmitter,
    ) -> None:
        key = cache_key(model, category, query)

        if use_cache:
            query = query.strip()
            cached = await self._read_cache(key)
            if cached is not None:
                logger.info("Cache hit for model=%s category=%s", model, category.value)
                await emitter.emit("sources", _dump(cached.webs))
                await emitter.emit("images", _dump(cached.images))
                await emitter.emit("answer", cached.answer)
                await emitter.emit("related", cached.related)
                await emitter.close()
                self._count_usage(user_id)
                return

        options = SearchOptions(categories=(category,))
        texts: List[TextSource] = []
        images: List[ImageSource] = []

        if user_id and category == Category.ALL:
            vector_result, web_result = await asyncio.gather(
                self._vector_search(user_id).search(query),
                self._web_search(options).search(query),
            )
            texts = [*vector_result.texts, *web_result.texts]
            images = [*vector_result.images, *web_result.images]

        if not texts:
            fallback = await self._web_search(options).search(query)
            texts, images = list(fallback.texts), list(fallback.images)

        await emitter.emit("sources", _dump(texts))
        await emitter.emit("images", _dump(images))

        answer_job = asyncio.ensure_future(self._generate_answer(query, model, category, texts, emitter))
        image_job = asyncio.ensure_future(self._backfill_images(query, images))
        try:
            (full_answer, answered), fetched_images = await asyncio.gather(answer_job, image_job)
        except BaseException:
            answer_job.cancel()
            image_job.cancel()
            await asyncio.wait([answer_job, image_job])
            raise

        if not images:
            images = fetched_images
            await emitter.emit("images", _dump(images))

        full_related, related_ok = await self._generate_related(query, texts, emitter)

        self._count_usage(user_id)
        if answered and related_ok:
            result = CachedResult(webs=texts, images=images, answer=full_answer, related=full_related)
            self._spawn(self._cache.set(key, result), f"cache write for {key!r}")
        else:
            logger.warning("Skipping cache write for %r after a degraded run", key)

        await emitter.close()

    async def _generate_answer(
        self,
        query: str,
        model: str,
        category: Category,
        texts: Sequence[TextSource],
        emitter: StreamEmitter,
    ) -> Tuple[str, bool]:
        messages = build_messages(category, query, texts, "answer")
        full_answer, ok = await self._stream_chat(model, messages, "answer", emitter)
        if not ok:
            await emitter.emit("answer", FALLBACK_ANSWER)
        return full_answer, ok

    async def _generate_related(
        self, query: str, texts: Sequence[TextSource], emitter: StreamEmitter
    ) -> Tuple[str, bool]:
        messages = build_messages(Category.ALL, query, texts, "related")
        full_related, ok = await self._stream_chat(self._settings.related_model, messages, "related", emitter)
        return (full_related if ok else ""), ok

    async def _stream_chat(
        self, model: str, messages: List[Message], kind: EventKind, emitter: StreamEmitter
    ) -> Tuple[str, bool]:
        parts: List[str] = []

        async def on_token(text: str, done: bool) -> None:
            if text:
                parts.append(text)
                await emitter.emit(kind, text)

        try:
            await self._chat_models.get(model).chat_stream(messages, on_token, model)
        except StreamCancelled:
            raise
        except Exception as exc:
            logger.error("%s generation with %s failed: %s", kind, model, exc, exc_info=exc)
            return "".join(parts), False
        return "".join(parts), True

    async def _backfill_images(self, query: str, images: List[ImageSource]) -> List[ImageSource]:
        if images:
            return images
        result = await self._web_search(SearchOptions(categories=(Category.IMAGES,))).search(query)
        return secure_images(result.images, self._settings.image_limit)

    async def _read_cache(self, key: str) -> Optional[CachedResult]:
        try:
            return await self._cache.get(key)
        except Exception as exc:
            logger.error("Cache read for %r failed, treating as a miss: %s", key, exc, exc_info=exc)
            return None

    def _count_usage(self, user_id: Optional[str]) -> None:
        if user_id:
            self._spawn(self._usage.increment(user_id), f"usage increment for {user_id}")

    def _spawn(self, awaitable: Awaitable[Any], description: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(partial(self._background_done, description))

    def _background_done(self, description: str, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("Background %s was cancelled", description)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background %s failed: %s", description, exc, exc_info=exc)
        elif task.result() is False:
            logger.warning("Background %s reported failure", description)


def _dump(items: Sequence[BaseModel]) -> List[dict]:
    return [item.model_dump(by_alias=True) for item in items]
