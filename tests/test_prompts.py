import pytest

from answerflow.models import Category, TextSource
from answerflow.prompts import (
    ACADEMIC_PROMPT,
    DEEP_QUERY_PROMPT,
    MORE_QUESTIONS_PROMPT,
    NEWS_PROMPT,
    build_context,
    build_messages,
    choose_prompt,
)


def _text(content: str) -> TextSource:
    return TextSource(title=content, url=f"https://example.com/{content}", content=content)


def test_context_numbers_citations_from_one() -> None:
    context = build_context([_text("alpha"), _text("beta")])

    assert context == "[citation:1] alpha\n\n[citation:2] beta"


def test_context_is_empty_without_sources() -> None:
    assert build_context([]) == ""


@pytest.mark.parametrize(
    ("category", "purpose", "expected"),
    [
        (Category.ACADEMIC, "answer", ACADEMIC_PROMPT),
        (Category.ACADEMIC, "related", ACADEMIC_PROMPT),
        (Category.NEWS, "answer", NEWS_PROMPT),
        (Category.NEWS, "related", NEWS_PROMPT),
        (Category.ALL, "answer", DEEP_QUERY_PROMPT),
        (Category.IMAGES, "answer", DEEP_QUERY_PROMPT),
        (Category.ALL, "related", MORE_QUESTIONS_PROMPT),
        (Category.VIDEOS, "related", MORE_QUESTIONS_PROMPT),
    ],
)
def test_template_selection(category, purpose, expected) -> None:
    assert choose_prompt(category, purpose) is expected


def test_messages_are_a_single_user_turn_ending_with_the_query() -> None:
    messages = build_messages(Category.ALL, "what is rust?", [_text("a {brace} b")], "answer")

    assert len(messages) == 1
    assert messages[0]["role"] == "user"
    content = messages[0]["content"]
    assert "[citation:1] a {brace} b" in content
    assert content.endswith(" what is rust?")
