"""Content-generation collaborator: the only place that talks to model providers.

`generate` is a plain chat completion through LangChain's ChatAnthropic.
`generate_grounded` first runs a Tavily web search and answers from those
results, returning the pages it used as `sources`.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from tavily import AsyncTavilyClient

from advisor.config import ModelConfig
from advisor.errors import ParseError, UpstreamError

logger = logging.getLogger(__name__)

# Tavily rejects queries longer than this.
MAX_QUERY_CHARS = 400


@dataclass(frozen=True)
class GroundingSource:
    uri: str
    title: str

    def to_dict(self) -> dict[str, str]:
        return {"uri": self.uri, "title": self.title}


@dataclass
class Completion:
    content: str
    model: str = ""
    sources: list[GroundingSource] = field(default_factory=list)


def _extract_content(content) -> str:
    """Normalize message content. Anthropic can return a list of blocks or a string."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                if block.get("type", "text") == "text":
                    parts.append(block.get("text", ""))
            else:
                parts.append(str(block))
        return "\n".join(p for p in parts if p)
    return str(content)


def to_langchain_messages(messages: list[dict[str, str]]) -> list[BaseMessage]:
    """Map ordered {role, content} dicts onto LangChain message classes."""
    converted: list[BaseMessage] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        elif role == "user":
            converted.append(HumanMessage(content=content))
        else:
            raise ValueError(f"Unknown message role: {role!r}")
    return converted


class ContentClient:
    """Calls the model provider and returns a `Completion`.

    Every provider failure surfaces as `UpstreamError`; an empty reply is
    treated as a failure too.
    """

    def __init__(
        self,
        models: ModelConfig,
        *,
        api_key: str | None = None,
        search_api_key: str | None = None,
    ):
        self.models = models
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.search_api_key = search_api_key or os.environ.get("TAVILY_API_KEY")

    def _get_llm(self, model: str, temperature: float, max_tokens: int) -> ChatAnthropic:
        if not self.api_key:
            raise UpstreamError("ANTHROPIC_API_KEY environment variable is not set")
        return ChatAnthropic(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=self.models.max_retries,
            api_key=self.api_key,
        )

    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.7,
        max_tokens: int = 4000,
        model: str | None = None,
    ) -> Completion:
        model = model or self.models.default
        llm = self._get_llm(model, temperature, max_tokens)
        try:
            response = await llm.ainvoke(to_langchain_messages(messages))
        except Exception as e:
            logger.error(f"Model call failed ({model}): {e}")
            status = getattr(e, "status_code", None)
            raise UpstreamError(f"Model API error: {e}", status_code=status) from e

        content = _extract_content(response.content)
        if not content.strip():
            raise UpstreamError(f"No content in {model} response")
        return Completion(content=content, model=model)

    async def generate_grounded(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.5,
        max_tokens: int = 4000,
        search_query: str | None = None,
        model: str | None = None,
    ) -> Completion:
        if not self.search_api_key:
            logger.warning("No TAVILY_API_KEY for grounding, answering without search")
            return await self.generate(
                messages, temperature=temperature, max_tokens=max_tokens, model=model
            )

        query = (search_query or _last_user_content(messages))[:MAX_QUERY_CHARS]
        results = await self._search(query)
        sources = _unique_sources(results)

        grounded = [*messages[:-1], _with_search_context(messages[-1], results)]
        completion = await self.generate(
            grounded, temperature=temperature, max_tokens=max_tokens, model=model
        )
        completion.sources = sources
        completion.model = f"{completion.model}-grounded"
        logger.info(f"Grounded response received with {len(sources)} sources")
        return completion

    async def _search(self, query: str) -> list[dict[str, Any]]:
        try:
            client = AsyncTavilyClient(api_key=self.search_api_key)
            response = await client.search(
                query=query,
                max_results=self.models.search_results,
                search_depth="basic",
            )
        except Exception as e:
            logger.warning(f"Web search failed for {query!r}: {e}")
            raise UpstreamError(f"Search failed: {e}") from e
        return response.get("results", [])


def _last_user_content(messages: list[dict[str, str]]) -> str:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            return msg.get("content", "")
    return ""


def _unique_sources(results: list[dict[str, Any]]) -> list[GroundingSource]:
    sources: list[GroundingSource] = []
    seen: set[str] = set()
    for r in results:
        url, title = r.get("url"), r.get("title")
        if url and title and url not in seen:
            seen.add(url)
            sources.append(GroundingSource(uri=url, title=title))
    return sources


def _with_search_context(message: dict[str, str], results: list[dict[str, Any]]) -> dict[str, str]:
    if not results:
        return message
    lines = ["Web search results (cite only what these support):\n"]
    for i, r in enumerate(results, 1):
        snippet = (r.get("content") or "").strip()[:500]
        lines.append(f"{i}. {r.get('title', 'Untitled')}\n   URL: {r.get('url', '')}\n   {snippet}\n")
    return {**message, "content": "\n".join(lines) + "\n\n" + message.get("content", "")}


# ---------------------------------------------------------------------------
# Structured output parsing
# ---------------------------------------------------------------------------

_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```\s*$")
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)


def parse_json(content: str) -> Any:
    """Parse a model reply as JSON, tolerating a surrounding markdown code fence.

    Raises ParseError when the remainder is not valid JSON.
    """
    cleaned = _TRAILING_FENCE.sub("", _LEADING_FENCE.sub("", content.strip()))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON: {cleaned[:500]}")
        raise ParseError("Failed to parse AI response as JSON") from e


def extract_json(text: str) -> Any | None:
    """Best-effort JSON extraction from free text. Returns None when nothing parses."""
    candidates = []
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    for pattern in (r"\{[\s\S]*\}", r"\[[\s\S]*\]"):
        match = re.search(pattern, text)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None
