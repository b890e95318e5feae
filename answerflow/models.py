from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from answerflow.config import get_settings


class Category(str, Enum):
    ALL = "all"
    IMAGES = "images"
    NEWS = "news"
    ACADEMIC = "academic"
    VIDEOS = "videos"


class AskMode(str, Enum):
    SIMPLE = "simple"
    DEEP = "deep"
    RESEARCH = "research"


class TextSource(BaseModel):
    title: str = ""
    url: str
    content: str = ""


class ImageSource(BaseModel):
    title: str = ""
    url: str
    image_url: str = Field(..., serialization_alias="image")


class SearchResult(BaseModel):
    texts: List[TextSource] = Field(default_factory=list)
    images: List[ImageSource] = Field(default_factory=list)


class CachedResult(BaseModel):
    """Materialized response for one cache key. Never mutated after it is built."""

    model_config = ConfigDict(frozen=True)

    webs: Tuple[TextSource, ...] = ()
    images: Tuple[ImageSource, ...] = ()
    answer: str = ""
    related: str = ""


@dataclass(frozen=True, slots=True)
class SearchOptions:
    categories: Tuple[Category, ...] = ()

    @property
    def category(self) -> Optional[Category]:
        return self.categories[0] if self.categories else None


@dataclass(frozen=True, slots=True)
class Identity:
    user_id: Optional[str]
    client_ip: str = "127.0.0.1"

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


def cache_key(model: str, category: Category, query: str) -> str:
    return ":".join((model, Category(category).value, query.strip()))


class AskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1, description="User text query")
    use_cache: bool = Field(True, alias="useCache", description="Replay a cached answer when one exists")
    mode: AskMode = Field(AskMode.SIMPLE, description="Request shape selecting prompt behaviour")
    model: str = Field(
        default_factory=lambda: get_settings().default_model,
        description="Chat model identifier used for the answer",
    )
    source: Category = Field(Category.ALL, description="Search category")

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value


class HealthResponse(BaseModel):
    status: str
