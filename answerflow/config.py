from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    search_provider: Literal["serper", "brave"] = "serper"

    serper_api_key: str = ""
    serper_endpoint: str = "https://google.serper.dev/"

    brave_api_key: str = ""
    brave_endpoint: str = "https://api.search.brave.com/res/v1/"
    brave_result_count: int = 10
    brave_safe_search: str = "moderate"

    vector_endpoint: str = ""
    vector_token: str = ""
    vector_top_k: int = 5

    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_models: List[str] = ["gpt-4o-mini", "gpt-4o"]

    local_models: List[str] = []
    llm_model_path: Path = Path("./models/llava-v1.6-mistral-7b.Q4_K_M.gguf")
    llm_context_window: int = 8192
    llm_gpu_layers: int = 33
    llm_threads: int = 8
    llm_batch_size: int = 512
    enable_metal_acceleration: bool = True

    default_model: str = "gpt-4o-mini"
    related_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.2
    llm_top_p: float = 0.95
    answer_max_tokens: int = 1024
    llm_timeout_seconds: float = 60.0

    image_limit: int = 8
    max_query_length: int = 2000

    fetch_timeout_seconds: float = 12.0
    search_retry_attempts: int = 3
    user_agent: str = "AnswerflowBot/0.1"

    cache_ttl_seconds: int = 60 * 60 * 24
    rate_limit_requests: int = 3
    rate_limit_window_seconds: int = 60 * 60 * 24

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ANSWERFLOW_",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
