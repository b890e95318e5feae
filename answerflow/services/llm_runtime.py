from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from answerflow.config import Settings

logger = logging.getLogger(__name__)

Message = Dict[str, str]
TokenHandler = Callable[[str, bool], Awaitable[None]]

_END = object()


class UnknownModelError(ValueError):
    pass


class ChatModel(Protocol):
    async def chat_stream(self, messages: List[Message], on_token: TokenHandler, model: str) -> None:
        """Call ``on_token(text, False)`` per token, then ``on_token("", True)`` exactly once."""


class OpenAIChat:
    """Hosted chat completions through the OpenAI SDK (or any compatible base URL)."""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key or None,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_seconds,
        )

    async def chat_stream(self, messages: List[Message], on_token: TokenHandler, model: str) -> None:
        logger.debug("Dispatching streamed chat completion to %s with %d messages", model, len(messages))
        stream = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=self._settings.llm_temperature,
            top_p=self._settings.llm_top_p,
            max_tokens=self._settings.answer_max_tokens,
            stream=True,
        )
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                token = chunk.choices[0].delta.content
                if token:
                    await on_token(token, False)
        finally:
            await stream.close()
        await on_token("", True)


class LocalLLM:
    """Wrapper around llama.cpp for streamed chat completions."""

    def __init__(self, settings: Settings):
        self._settings = settings
        model_path = settings.llm_model_path.expanduser().resolve()
        if not model_path.exists():
            raise FileNotFoundError(f"Local model not found at {model_path}")

        try:
            from llama_cpp import Llama
        except ModuleNotFoundError as exc:
            raise ModuleNotFoundError(
                "Local models need the optional 'llama-cpp-python' dependency: pip install 'answerflow[local]'"
            ) from exc

        kwargs: Dict[str, Any] = {
            "model_path": str(model_path),
            "n_ctx": settings.llm_context_window,
            "n_threads": settings.llm_threads,
            "n_batch": settings.llm_batch_size,
            "seed": 0,
            "verbose": False,
        }
        if settings.enable_metal_acceleration:
            kwargs["n_gpu_layers"] = settings.llm_gpu_layers

        self._llama = Llama(**kwargs)

    async def chat_stream(self, messages: List[Message], on_token: TokenHandler, model: str) -> None:
        logger.debug("Dispatching local chat completion (%s) with %d messages", model, len(messages))
        chunks = await asyncio.to_thread(
            self._llama.create_chat_completion,
            messages=messages,
            max_tokens=self._settings.answer_max_tokens,
            temperature=self._settings.llm_temperature,
            top_p=self._settings.llm_top_p,
            stream=True,
        )
        pending: Optional[asyncio.Future] = None
        try:
            while True:
                pending = asyncio.ensure_future(asyncio.to_thread(next, chunks, _END))
                chunk = await asyncio.shield(pending)
                pending = None
                if chunk is _END:
                    break
                choices = chunk.get("choices", [])
                token = choices[0].get("delta", {}).get("content") if choices else None
                if token:
                    await on_token(token, False)
        finally:
            # A worker may still be inside next(); the generator can only be closed once it returns.
            if pending is not None:
                await asyncio.wait([pending])
            await asyncio.to_thread(chunks.close)
        await on_token("", True)


class ChatModelRegistry:
    """Maps model identifiers to the ChatModel that serves them.

    Providers are built on first use so a missing local model file only
    matters when a local model is actually requested.
    """

    def __init__(self, settings: Settings, providers: Optional[Dict[str, Callable[[], ChatModel]]] = None):
        self._settings = settings
        if providers is None:
            providers = {model: self._openai for model in settings.openai_models}
            providers.update({model: self._local for model in settings.local_models})
        self._providers = providers
        self._instances: Dict[str, ChatModel] = {}
        self._openai_chat: Optional[OpenAIChat] = None
        self._local_llm: Optional[LocalLLM] = None

    def is_valid(self, model: str) -> bool:
        return model in self._providers

    def get(self, model: str) -> ChatModel:
        if not self.is_valid(model):
            raise UnknownModelError(f"Unknown chat model: {model}")
        if model not in self._instances:
            self._instances[model] = self._providers[model]()
        return self._instances[model]

    def _openai(self) -> ChatModel:
        if self._openai_chat is None:
            self._openai_chat = OpenAIChat(self._settings)
        return self._openai_chat

    def _local(self) -> ChatModel:
        if self._local_llm is None:
            self._local_llm = LocalLLM(self._settings)
        return self._local_llm
