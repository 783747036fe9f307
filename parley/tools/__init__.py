"""Tools available to the planning loop."""

from parley.tools.registry import (
    Tool,
    ToolContext,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    set_tool_registry,
)
from parley.tools.tutor import TUTOR_TOOL_NAMES, TUTOR_TOOLS
from parley.tools.web_search import (
    BraveSearchProvider,
    SearchProvider,
    SearchResponse,
    SearchResult,
    WebSearchTool,
    create_search_provider,
)


def create_default_registry(search_provider: SearchProvider | None = None) -> ToolRegistry:
    """Registry with web search and every tutoring tool registered."""
    registry = ToolRegistry()
    registry.register(WebSearchTool(provider=search_provider))
    for tool_cls in TUTOR_TOOLS:
        registry.register(tool_cls())
    return registry


__all__ = [
    "BraveSearchProvider",
    "SearchProvider",
    "SearchResponse",
    "SearchResult",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "TUTOR_TOOL_NAMES",
    "WebSearchTool",
    "create_search_provider",
    "create_default_registry",
    "get_tool_registry",
    "set_tool_registry",
]
