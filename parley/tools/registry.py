"""Tool registry and base tool class."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, model_validator

from parley.abort import AbortSignal
from parley.config import get_config
from parley.exceptions import ToolExecutionError, ToolNotFoundError, TurnAborted
from parley.llm import ToolDefinition
from parley.logging import get_logger
from parley.state import StateStore

if TYPE_CHECKING:
    from parley.store import MessageStore
    from parley.tools.web_search import SearchProvider

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    ok: bool = True
    payload: Any = None
    error: str | None = None
    handled: bool = True

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.ok and not (self.error or "").strip():
            self.error = "Tool execution failed"
        return self

    def to_content(self) -> str:
        """Serialize for insertion into the conversation as a tool entry."""
        if not self.handled:
            return "Unknown tool"
        if not self.ok:
            return f"Error: {self.error}"
        if self.payload is None:
            return "OK"
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, ensure_ascii=False)


@dataclass
class ToolContext:
    """Turn-scoped identifiers and capability handles passed to every tool.

    Never carries the conversation itself.
    """

    chat_id: str
    assistant_message_id: str
    state: StateStore
    user_text: str = ""
    model_id: str = ""
    store: "MessageStore | None" = None
    search: "SearchProvider | None" = None
    signal: AbortSignal | None = None


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None
    # Output is itself the complete user-visible artifact for the turn.
    content_terminal: bool = False
    # Results are web sources the final answer should cite.
    grounding: bool = False

    @abstractmethod
    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        """Execute the tool.

        Args:
            args: Tool-specific arguments
            context: Turn-scoped identifiers and capabilities

        Returns:
            ToolResult with ok status and payload
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check the schema's required keys are present.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )

    async def close(self) -> None:
        return None


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        """Get tool definitions for the LLM, optionally restricted to ``names``."""
        if names is None:
            return [tool.get_definition() for tool in self._tools.values()]
        return [self._tools[name].get_definition() for name in names if name in self._tools]

    def is_content_terminal(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.content_terminal)

    def is_grounding(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.grounding)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Execute a tool by name.

        Unknown names return ``ToolResult(handled=False)`` instead of raising.

        Raises:
            ToolExecutionError if the tool fails or times out
            TurnAborted if the context's signal fires first
        """
        tool = self._tools.get(name)
        if tool is None:
            log.warning("Unknown tool requested", tool=name)
            return ToolResult(ok=False, handled=False, error=f"Unknown tool: {name}")

        signal = context.signal
        if signal is not None:
            signal.raise_if_aborted()

        if not isinstance(arguments, dict):
            arguments = {}
        tool.validate_arguments(arguments)

        timeout_seconds = float(tool.timeout_seconds or get_config().tools.timeout_seconds or 30.0)
        timeout_seconds = max(1.0, timeout_seconds)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[Any] | None = None
        abort_event = asyncio.Event()

        def _on_abort(_reason: Any) -> None:
            abort_event.set()

        if signal is not None:
            signal.add_listener(_on_abort)
        try:
            log.info("Executing tool", tool=name, chat_id=context.chat_id)
            execute_task = asyncio.create_task(tool.execute(arguments, context))
            abort_wait_task = asyncio.create_task(abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, ok=result.ok)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise TurnAborted(f"Tool '{name}' aborted")

            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except (ToolExecutionError, TurnAborted):
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            if signal is not None:
                signal.remove_listener(_on_abort)
            await self._cancel_task(abort_wait_task)

    async def close(self) -> None:
        for tool in self._tools.values():
            await tool.close()


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry with the built-in tools registered."""
    global _registry
    if _registry is None:
        from parley.tools import create_default_registry

        _registry = create_default_registry()
    return _registry


def set_tool_registry(registry: ToolRegistry | None) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
