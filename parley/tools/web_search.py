"""Web search tool powered by the Brave Search API."""

import asyncio
import os
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field

from parley.config import get_config
from parley.logging import get_logger
from parley.notices import NOTICE_MISSING_SEARCH_KEY
from parley.state import SEARCH_SECTION
from parley.tools.registry import Tool, ToolContext, ToolResult

log = get_logger(__name__)

MIN_RESULTS = 1
MAX_RESULTS = 10


class SearchResult(BaseModel):
    """One web result."""

    url: str = ""
    title: str | None = None
    description: str | None = None


class SearchResponse(BaseModel):
    """Outcome of a search call; failures carry ``error`` instead of raising."""

    ok: bool
    results: list[SearchResult] = Field(default_factory=list)
    error: str | None = None


class SearchProvider(ABC):
    """Boundary for web search backends."""

    @abstractmethod
    async def search(self, query: str, count: int) -> SearchResponse:
        pass

    async def close(self) -> None:
        return None


def _clean_text(value: str, max_chars: int = 500) -> str:
    """Normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", (value or "")).strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "..."


class BraveSearchProvider(SearchProvider):
    """Search the web using the Brave Search API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        safesearch: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        cfg = get_config().tools.web_search
        self.api_key = (
            (api_key or "").strip()
            or str(cfg.api_key or "").strip()
            or str(os.environ.get("BRAVE_SEARCH_API_KEY", "")).strip()
            or str(os.environ.get("BRAVE_API_KEY", "")).strip()
        )
        self.base_url = (base_url or cfg.base_url).strip()
        self.timeout = float(timeout or cfg.timeout or 20)
        safe_value = (safesearch or cfg.safesearch or "moderate").strip().lower()
        self.safesearch = safe_value if safe_value in {"off", "moderate", "strict"} else "moderate"
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "Parley/0.1.0 (Web Search)"},
        )

    async def search(self, query: str, count: int) -> SearchResponse:
        """Execute Brave web search."""
        if not self.api_key:
            return SearchResponse(ok=False, error=NOTICE_MISSING_SEARCH_KEY)

        params: dict[str, Any] = {
            "q": query,
            "count": count,
            "safesearch": self.safesearch,
        }
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": self.api_key,
        }

        try:
            response = await self.client.get(
                self.base_url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            log.error("Brave web search failed", query=query, error=detail)
            return SearchResponse(ok=False, error=detail)
        except (httpx.HTTPError, ValueError) as e:
            log.error("Web search failed", query=query, error=str(e))
            return SearchResponse(ok=False, error=str(e) or "Network error")

        web_block = payload.get("web", {}) if isinstance(payload, dict) else {}
        raw_results = web_block.get("results", []) if isinstance(web_block, dict) else []
        if not isinstance(raw_results, list):
            raw_results = []

        results: list[SearchResult] = []
        for item in raw_results:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url", "") or "").strip()
            if not url:
                continue
            results.append(
                SearchResult(
                    url=url,
                    title=_clean_text(str(item.get("title", "") or ""), max_chars=180) or None,
                    description=_clean_text(str(item.get("description", "") or "")) or None,
                )
            )
        return SearchResponse(ok=True, results=results[:count])

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()


def create_search_provider(name: str | None = None) -> SearchProvider:
    """Create the search backend named by ``tools.web_search.provider``."""
    name = (name or get_config().tools.web_search.provider or "").strip().lower()
    if name == "brave":
        return BraveSearchProvider()
    raise ValueError(f"Search provider '{name}' not supported. Use 'brave'.")


def normalize_search_args(
    raw: Any,
    fallback_query: str = "",
    fallback_chars: int = 256,
    default_count: int = 5,
) -> tuple[str, int]:
    """Resolve ``(query, count)`` from free text or ``{"query"|"q", "count"}``.

    Falls back to the user's raw text, truncated to ``fallback_chars``, when no
    query was supplied. ``count`` is clamped to ``[1, 10]``.
    """
    query = ""
    count: Any = None
    if isinstance(raw, str):
        query = raw
    elif isinstance(raw, dict):
        value = raw.get("query", raw.get("q"))
        if isinstance(value, dict):
            value = value.get("query", value.get("q"))
        query = value if isinstance(value, str) else ""
        count = raw.get("count")

    query = re.sub(r"\s+", " ", query).strip()
    if not query:
        query = re.sub(r"\s+", " ", fallback_query or "").strip()[: max(1, fallback_chars)].strip()

    try:
        effective = int(count) if count is not None and not isinstance(count, bool) else int(default_count)
    except (TypeError, ValueError):
        effective = int(default_count)
    return query, min(max(effective, MIN_RESULTS), MAX_RESULTS)


def merge_search_results(groups: list[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    """Flatten result groups, keeping the first entry per URL (or title+description)."""
    merged: dict[str, dict[str, Any]] = {}
    for group in groups:
        for result in group or []:
            if not isinstance(result, dict):
                continue
            key = str(result.get("url") or "").strip() or f"{result.get('title')}-{result.get('description')}"
            if key and key not in merged:
                merged[key] = result
    return list(merged.values())


class WebSearchTool(Tool):
    """Search the web and return results the answer can cite."""

    name = "web_search"
    description = (
        "Search the public web for up-to-date information. Use only when necessary. "
        "Return results to ground your answer and cite sources as [n]."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query to run."},
            "count": {
                "type": "integer",
                "description": "How many results to retrieve (1-10).",
                "minimum": MIN_RESULTS,
                "maximum": MAX_RESULTS,
            },
        },
        "required": ["query"],
    }
    grounding = True

    def __init__(self, provider: SearchProvider | None = None):
        self.provider = provider

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        # An empty query falls back to the user's message.
        return None

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        cfg = get_config()
        search_cfg = cfg.tools.web_search
        query, count = normalize_search_args(
            args,
            fallback_query=context.user_text,
            fallback_chars=search_cfg.fallback_query_chars,
            default_count=search_cfg.max_results,
        )
        if not query:
            return ToolResult(ok=False, error="Missing required query")

        provider = context.search or self.provider
        if provider is None:
            provider = self.provider = create_search_provider()

        state = context.state
        message_id = context.assistant_message_id
        state.merge_message_state(SEARCH_SECTION, message_id, {"query": query, "status": "loading"})

        try:
            response = await provider.search(query, count)
        except asyncio.CancelledError:
            # Timeout or abort; the entry must not stay "loading".
            state.merge_message_state(
                SEARCH_SECTION, message_id, {"query": query, "status": "error", "error": "Search cancelled"}
            )
            raise
        except Exception as e:
            log.warning("Web search failed", query=query, error=str(e))
            response = SearchResponse(ok=False, error=str(e) or "Search failed")

        if not response.ok:
            state.merge_message_state(
                SEARCH_SECTION,
                message_id,
                {"query": query, "status": "error", "error": response.error},
            )
            return ToolResult(ok=False, error=response.error)

        found = [r.model_dump() for r in response.results]
        previous = state.get_message_state(SEARCH_SECTION, message_id).get("results") or []
        state.merge_message_state(
            SEARCH_SECTION,
            message_id,
            {
                "query": query,
                "status": "done",
                "results": merge_search_results([previous, found]),
                "error": None,
            },
        )
        log.info("Web search done", query=query, results=len(found))
        payload = [
            {"title": r.get("title"), "url": r.get("url"), "description": r.get("description")}
            for r in found[: cfg.planning.max_sources]
        ]
        return ToolResult(ok=True, payload=payload)

    async def close(self) -> None:
        if self.provider is not None:
            await self.provider.close()
