import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from answerflow.main import app, ask_endpoint, get_pipeline
from answerflow.models import (
    AskRequest,
    CachedResult,
    Category,
    Identity,
    ImageSource,
    SearchResult,
    TextSource,
    cache_key,
)


@pytest.fixture(autouse=True)
def cleanup_overrides():
    app.dependency_overrides = {}
    yield
    app.dependency_overrides = {}


@pytest.fixture()
def test_client(harness):
    harness.web.results = {
        Category.NEWS: SearchResult(
            texts=[
                TextSource(title="One", url="https://one.example.com", content="first"),
                TextSource(title="Two", url="https://two.example.com", content="second"),
            ]
        ),
        Category.IMAGES: SearchResult(
            images=[ImageSource(title="Pic", url="https://pic.example.com", image_url="https://img.example.com/1.png")]
        ),
    }
    app.dependency_overrides[get_pipeline] = lambda: harness.pipeline
    with TestClient(app) as client:
        yield client


def _events(body: str):
    frames = [frame for frame in body.split("\n\n") if frame.strip()]
    assert all(frame.startswith("data: ") for frame in frames)
    return [json.loads(frame[len("data: "):]) for frame in frames]


def test_health(test_client: TestClient) -> None:
    assert test_client.get("/health").json() == {"status": "ok"}


def test_ask_streams_server_sent_events(test_client: TestClient, harness) -> None:
    response = test_client.post(
        "/ask",
        json={"query": "hello", "useCache": False, "mode": "simple", "model": "gpt-4o-mini", "source": "news"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _events(response.text)
    assert [next(iter(event)) for event in events] == ["sources", "images", "answer", "answer", "images", "related"]
    assert len(events[0]["sources"]) == 2
    assert "".join(event["answer"] for event in events if "answer" in event) == "Hi there"
    assert events[-1] == {"related": "Q1?"}


def test_invalid_model_is_rejected_before_streaming(test_client: TestClient, harness) -> None:
    response = test_client.post("/ask", json={"query": "hello", "model": "not-a-model"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Please choose a valid model"
    assert harness.web.calls == []


def test_blank_query_is_a_validation_error(test_client: TestClient) -> None:
    response = test_client.post("/ask", json={"query": "   ", "model": "gpt-4o-mini"})

    assert response.status_code == 422


def test_fourth_anonymous_request_is_rate_limited(test_client: TestClient, harness) -> None:
    body = {"query": "hello", "useCache": False, "model": "gpt-4o-mini", "source": "news"}
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}

    statuses = [test_client.post("/ask", json=body, headers=headers).status_code for _ in range(4)]

    assert statuses == [200, 200, 200, 429]
    assert len(harness.answer_model.calls) == 3
    other = test_client.post("/ask", json=body, headers={"X-Forwarded-For": "198.51.100.1"})
    assert other.status_code == 200


def test_signed_in_users_are_not_rate_limited(test_client: TestClient, harness) -> None:
    body = {"query": "hello", "useCache": False, "model": "gpt-4o-mini", "source": "news"}

    statuses = [test_client.post("/ask", json=body, headers={"X-User-Id": "user-1"}).status_code for _ in range(5)]

    assert statuses == [200] * 5


def test_cached_answer_is_replayed(test_client: TestClient, harness) -> None:
    body = {"query": "hello", "useCache": True, "model": "gpt-4o-mini", "source": "news"}
    headers = {"X-User-Id": "user-1"}

    first = test_client.post("/ask", json=body, headers=headers)
    second = test_client.post("/ask", json=body, headers=headers)

    assert len(harness.answer_model.calls) == 1
    replay = _events(second.text)
    assert replay[2] == {"answer": "Hi there"}
    assert replay[3] == {"related": "Q1?"}
    assert first.status_code == second.status_code == 200


def test_model_defaults_to_the_configured_default(test_client: TestClient, harness) -> None:
    response = test_client.post("/ask", json={"query": "hello", "useCache": False, "source": "news"})

    assert response.status_code == 200
    assert len(harness.answer_model.calls) == 1
    assert harness.answer_model.calls[0][0] == "gpt-4o-mini"


class StallingModel:
    """Streams one token, then waits until the request is cancelled."""

    def __init__(self) -> None:
        self.cancelled = False

    async def chat_stream(self, messages, on_token, model):
        await on_token("Hi", False)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


async def _read_then_close(response, frames: int):
    stream = response.body_iterator
    received = [await stream.__anext__() for _ in range(frames)]
    await stream.aclose()
    return received


def test_client_disconnect_cancels_the_running_pipeline(harness) -> None:
    harness.web.results = {
        Category.ALL: SearchResult(
            texts=[TextSource(title="One", url="https://one.example.com", content="first")],
            images=[ImageSource(title="Pic", url="https://pic.example.com", image_url="https://img.example.com/1.png")],
        )
    }
    stalling = StallingModel()
    harness.answer_model = stalling
    request = AskRequest(query="hello", useCache=True, model="gpt-4o-mini")

    async def _run():
        response = await ask_endpoint(request, Identity(user_id="user-1"), harness.pipeline)
        frames = await _read_then_close(response, 3)
        await harness.pipeline.drain_background()
        return frames

    frames = asyncio.run(_run())

    assert json.loads(frames[2][len("data: "):]) == {"answer": "Hi"}
    assert stalling.cancelled
    assert len(harness.cache) == 0
    assert harness.related_model.calls == []


def test_client_disconnect_after_replay_still_counts_usage(harness) -> None:
    stored = CachedResult(answer="Stored answer", related="Stored?")
    asyncio.run(harness.cache.set(cache_key("gpt-4o-mini", Category.ALL, "hello"), stored))
    request = AskRequest(query="hello", useCache=True, model="gpt-4o-mini")

    async def _run():
        response = await ask_endpoint(request, Identity(user_id="user-1"), harness.pipeline)
        frames = await _read_then_close(response, 1)
        await harness.pipeline.drain_background()
        return frames

    frames = asyncio.run(_run())

    assert json.loads(frames[0][len("data: "):]) == {"sources": []}
    assert harness.answer_model.calls == []
    assert harness.usage.count("user-1") == 1
