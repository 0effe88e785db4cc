"""Web search via the DuckDuckGo instant-answer API."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote_plus

import httpx

from taskforge.tools.base import ToolResult

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_URL = "https://api.duckduckgo.com/"
DEFAULT_TIMEOUT_SECONDS = 15.0
MAX_RELATED_TOPICS = 5


class SearchTool:
    """Instant-answer lookups; a miss is reported as a successful hint, not an error."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_SEARCH_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    def search(self, query: str) -> ToolResult:
        if not query.strip():
            return ToolResult.failure("Query is required")

        try:
            response = self._client.get(
                self.base_url,
                params={"q": query, "format": "json", "no_redirect": "1", "no_html": "1"},
            )
        except httpx.TimeoutException:
            logger.warning("Timeout searching for %r", query)
            return _fallback(query)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error searching for %r: %s", query, exc)
            return _fallback(query)

        if not response.is_success:
            logger.warning("Search returned HTTP %s for %r", response.status_code, query)
            return _fallback(query)
        try:
            payload = response.json()
        except ValueError:
            return _fallback(query)

        lines = _format_answer(payload) if isinstance(payload, dict) else []
        if not lines:
            return _fallback(query)
        return ToolResult(success=True, output="\n".join(lines), metadata={"query": query})

    def close(self) -> None:
        self._client.close()


def _format_answer(payload: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    abstract = payload.get("Abstract")
    if abstract:
        lines.append(f"**{payload.get('AbstractSource') or 'Summary'}**: {abstract}")
        if payload.get("AbstractURL"):
            lines.append(f"URL: {payload['AbstractURL']}")

    topics = [
        topic
        for topic in payload.get("RelatedTopics") or []
        if isinstance(topic, dict) and topic.get("Text")
    ][:MAX_RELATED_TOPICS]
    if topics:
        lines.append("")
        lines.append("**Related:**")
        for topic in topics:
            lines.append(f"- {topic['Text']}")
            if topic.get("FirstURL"):
                lines.append(f"  URL: {topic['FirstURL']}")
    return lines


def _fallback(query: str) -> ToolResult:
    browse_url = f"https://www.google.com/search?q={quote_plus(query)}"
    return ToolResult(
        success=True,
        output=(
            f'Web search for "{query}" did not return structured results. '
            f"Try refining the query or use the browse tool to visit a specific URL like "
            f"{browse_url}"
        ),
        metadata={"query": query, "fallback": True, "browse_url": browse_url},
    )
