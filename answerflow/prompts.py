"""Prompt templates and message construction for answer and related-question generation."""

from __future__ import annotations

from typing import Dict, List, Literal, Sequence

from answerflow.models import Category, TextSource

Purpose = Literal["answer", "related"]

DEEP_QUERY_PROMPT = """You are a large language AI assistant. You are given a user question, and please write a clean, concise and accurate answer to the question. You will be given a set of related contexts to the question, each starting with a reference number like [citation:x], where x is a number. Please use the context and cite the context at the end of each sentence if applicable.

Your answer must be correct, accurate and written by an expert using an unbiased and professional tone. Do not give any information that is not related to the question, and do not repeat. Say "information is missing on" followed by the related topic, if the given context do not provide sufficient information.

Please cite the contexts with the reference numbers, in the format [citation:x]. If a sentence comes from multiple contexts, please list all applicable citations, like [citation:3][citation:5]. Other than code and specific names and citations, your answer must be written in the same language as the question.

Here are the set of contexts:

{context}

Remember, don't blindly repeat the contexts verbatim. And here is the user question:
"""

NEWS_PROMPT = """You are a news analyst. You are given a user question and a set of recent news snippets, each starting with a reference number like [citation:x]. Summarise what the news says about the question, lead with the most recent and most significant developments, and cite every claim in the format [citation:x]. If the snippets disagree, say so. Answer in the same language as the question.

Here are the news snippets:

{context}

And here is the user question:
"""

ACADEMIC_PROMPT = """You are a research assistant. You are given a user question and a set of excerpts from academic sources, each starting with a reference number like [citation:x]. Write a precise, well-structured answer in a scholarly tone, distinguish established findings from open questions, and cite every claim in the format [citation:x]. Answer in the same language as the question.

Here are the excerpts:

{context}

And here is the user question:
"""

MORE_QUESTIONS_PROMPT = """You are a helpful assistant that helps the user to ask related questions, based on user's original question and the related contexts. Please identify worthwhile topics that can be follow-ups, and write 3 questions no longer than 20 words each. Please make sure that specifics, like events, names, locations, are included in follow up questions so they can be asked standalone. Write each question on its own line without numbering. Your related questions must be in the same language as the original question.

Here are the contexts of the question:

{context}

Remember, based on the original question and related contexts, suggest three such further questions. Do NOT repeat the original question. Here is the original question:
"""


def build_context(texts: Sequence[TextSource]) -> str:
    return "\n\n".join(
        f"[citation:{index}] {text.content}" for index, text in enumerate(texts, start=1)
    )


def choose_prompt(category: Category, purpose: Purpose) -> str:
    if category == Category.ACADEMIC:
        return ACADEMIC_PROMPT
    if category == Category.NEWS:
        return NEWS_PROMPT
    if purpose == "related":
        return MORE_QUESTIONS_PROMPT
    return DEEP_QUERY_PROMPT


def build_messages(
    category: Category,
    query: str,
    texts: Sequence[TextSource],
    purpose: Purpose,
) -> List[Dict[str, str]]:
    system = choose_prompt(category, purpose).format(context=build_context(texts))
    return [{"role": "user", "content": f"{system} {query}"}]
