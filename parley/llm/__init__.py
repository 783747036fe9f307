"""Provider-neutral chat completion types and the provider interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from parley.logging import get_logger

log = get_logger(__name__)


@dataclass
class ToolCall:
    """A tool call requested by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A conversation entry as replayed to the provider."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    reasoning: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class LLMResponse:
    """Response from a non-streaming completion."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class GenerationParams:
    """Sampling and output options forwarded to the provider."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    reasoning_effort: str | None = None
    modalities: list[str] | None = None


StreamEventKind = Literal["text", "reasoning", "image", "usage"]


@dataclass
class StreamEvent:
    """One incremental event of a streamed completion."""

    kind: StreamEventKind
    data: str = ""
    usage: dict[str, int] | None = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        params: GenerationParams | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def stream(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        params: GenerationParams | None = None,
    ) -> AsyncIterator[StreamEvent]:
        pass

    def count_tokens(self, text: str) -> int:
        """Rough token estimate (~4 characters per token)."""
        return len(text or "") // 4

    async def close(self) -> None:
        return None


def create_provider(
    provider: str = "openrouter",
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 120.0,
    app_title: str = "Parley",
    referer: str = "http://localhost:3000",
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openrouter)
        api_key: Optional API key
        base_url: Optional base URL
        timeout: Request timeout for non-streaming calls
        app_title: Attribution title header
        referer: Attribution referer header

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name in {"openrouter", "openai-compatible", "openai_compatible"}:
        from parley.llm.openrouter import OpenRouterProvider

        return OpenRouterProvider(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            app_title=app_title,
            referer=referer,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openrouter'.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from parley.config import get_config

        cfg = get_config()
        _provider = create_provider(
            provider=cfg.provider.name,
            api_key=cfg.provider.api_key or None,
            base_url=cfg.provider.base_url or None,
            timeout=cfg.provider.timeout,
            app_title=cfg.provider.app_title,
            referer=cfg.provider.referer,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
