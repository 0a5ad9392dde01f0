"""Prompt text and per-query configuration.

Templates use the knowledge-base service's placeholder syntax
(``$query$``, ``$search_results$``, ``$conversation_history$``) so the
same text can be rendered locally for direct generation or handed to a
combined retrieve-and-generate call unrendered.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Iterable, Mapping, Sequence

from .config import QueryConfig
from .models import RetrievedChunk

MAX_CONTEXT_CHARS = 50_000

QUERY_PLACEHOLDER = "$query$"
SEARCH_RESULTS_PLACEHOLDER = "$search_results$"
HISTORY_PLACEHOLDER = "$conversation_history$"

_PLACEHOLDER = re.compile(r"\$([a-z_]+)\$")

GENERATION_PROMPT_TEMPLATE = """\
You are a document assistant that answers questions using ONLY the search \
results provided below. Follow these rules strictly:

1. Answer in exactly the same language as the question, even if the search \
results are written in another language.
2. Structure the answer: open with a direct one-sentence answer, then give \
the supporting details as short paragraphs or bullet points.
3. Immediately after every claim drawn from a specific search result, add a \
bracketed citation number such as [1] or [2]. Search results are numbered \
in the order they are supplied: the first one is [1], the second is [2], \
and so on. Never invent a number that has no search result.
4. If the search results do not contain the answer, say so plainly.

Search results:
$search_results$

Question: $query$
"""

ORCHESTRATION_PROMPT_TEMPLATE = """\
Rewrite the latest user question as a standalone search query for a \
document knowledge base. Use the conversation history only to resolve \
references such as "it" or "that document". Keep the language of the \
question. Return only the query.

Conversation history:
$conversation_history$

Question: $query$
$output_format_instructions$
"""


def build_context(
    chunks: Iterable[RetrievedChunk],
    max_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    """Join chunk texts in retrieval order, hard-cut at ``max_chars``."""
    texts = [c.content for c in chunks if c.content]
    return "\n\n".join(texts)[:max_chars]


def _render(template: str, values: Mapping[str, str]) -> str:
    """Fill ``$name$`` placeholders in one pass; unknown names are left as-is.

    Substituted text is never rescanned, so a literal placeholder inside a
    document or question survives.
    """

    def _fill(m: re.Match[str]) -> str:
        return values.get(m.group(1), m.group(0))

    return _PLACEHOLDER.sub(_fill, template)


def build_generation_prompt(
    question: str,
    context: str,
    template: str | None = None,
) -> str:
    return _render(
        template or GENERATION_PROMPT_TEMPLATE,
        {"search_results": context, "query": question},
    )


def _format_history(history: str | Sequence[Mapping[str, str]] | None) -> str:
    if not history:
        return "(none)"
    if isinstance(history, str):
        return history
    return "\n".join(
        f"{turn.get('role', 'user').capitalize()}: {turn.get('text', '')}" for turn in history
    )


def build_orchestration_prompt(
    question: str,
    history: str | Sequence[Mapping[str, str]] | None,
    template: str | None = None,
) -> str:
    return _render(
        template or ORCHESTRATION_PROMPT_TEMPLATE,
        {"conversation_history": _format_history(history), "query": question},
    )


def knowledge_base_templates(config: QueryConfig) -> tuple[str, str]:
    """(generation, orchestration) templates with service placeholders intact."""
    generation = build_generation_prompt(
        QUERY_PLACEHOLDER, SEARCH_RESULTS_PLACEHOLDER, config.generation.prompt_template
    )
    orchestration = build_orchestration_prompt(
        QUERY_PLACEHOLDER, HISTORY_PLACEHOLDER, config.orchestration.prompt_template
    )
    return generation, orchestration


def merge_config(base: Mapping[str, Any], override: Mapping[str, Any] | None) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Nested mappings merge key by key; any other override value (scalar,
    list, or a mapping replacing a non-mapping) wins outright. Neither
    input is modified.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in (override or {}).items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_query_config(
    defaults: QueryConfig,
    overrides: Mapping[str, Any] | None = None,
) -> QueryConfig:
    """Deep-merge ``overrides`` into ``defaults`` and re-validate.

    Raises ``ValueError`` (pydantic's ``ValidationError`` included) when
    the overrides are not a mapping or the merged config is invalid.
    """
    if not overrides:
        return defaults
    if not isinstance(overrides, Mapping):
        raise ValueError(f"config overrides must be a mapping, got {type(overrides).__name__}")
    return QueryConfig.model_validate(merge_config(defaults.model_dump(), overrides))
