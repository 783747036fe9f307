import asyncio

import pytest

from parley.abort import AbortController
from parley.exceptions import ToolExecutionError, ToolNotFoundError, TurnAborted
from parley.state import StateStore
from parley.tools.registry import Tool, ToolContext, ToolRegistry, ToolResult


class EchoTool(Tool):
    name = "echo"
    description = "Echo arguments"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    async def execute(self, args, context):
        return ToolResult(ok=True, payload={"text": args["text"], "chat": context.chat_id})


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 1.0

    async def execute(self, args, context):
        await asyncio.sleep(2.0)
        return ToolResult(ok=True, payload="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, args, context):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(ok=True, payload="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenTool(Tool):
    name = "broken"
    description = "Raises"
    parameters = {"type": "object", "properties": {}}

    async def execute(self, args, context):
        raise RuntimeError("kaput")


def _context(signal=None) -> ToolContext:
    return ToolContext(chat_id="chat-1", assistant_message_id="msg-1", state=StateStore(), signal=signal)


@pytest.mark.asyncio
async def test_execute_returns_tool_result_and_detaches_listener():
    registry = ToolRegistry()
    registry.register(EchoTool())
    controller = AbortController()

    result = await registry.execute("echo", {"text": "hi"}, _context(controller.signal))

    assert result.ok
    assert result.payload == {"text": "hi", "chat": "chat-1"}
    assert controller.signal.listener_count == 0


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_not_raised():
    registry = ToolRegistry()

    result = await registry.execute("nope", {}, _context())

    assert result.handled is False
    assert result.to_content() == "Unknown tool"
    with pytest.raises(ToolNotFoundError):
        registry.get("nope")


@pytest.mark.asyncio
async def test_missing_required_argument_raises():
    registry = ToolRegistry()
    registry.register(EchoTool())

    with pytest.raises(ToolExecutionError, match="Missing required argument: text"):
        await registry.execute("echo", {}, _context())


@pytest.mark.asyncio
async def test_tool_timeout_raises_execution_error():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {}, _context())


@pytest.mark.asyncio
async def test_abort_cancels_running_tool():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)
    controller = AbortController()

    asyncio.get_running_loop().call_later(0.05, controller.abort)
    with pytest.raises(TurnAborted):
        await registry.execute("cancellable", {}, _context(controller.signal))

    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_tool_exception_is_wrapped():
    registry = ToolRegistry()
    registry.register(BrokenTool())

    with pytest.raises(ToolExecutionError, match="kaput"):
        await registry.execute("broken", {}, _context())


def test_tool_result_content_forms():
    assert ToolResult(ok=False).error == "Tool execution failed"
    assert ToolResult(ok=False, error="bad").to_content() == "Error: bad"
    assert ToolResult(ok=True).to_content() == "OK"
    assert ToolResult(ok=True, payload="text").to_content() == "text"
    assert ToolResult(ok=True, payload=[{"a": 1}]).to_content() == '[{"a": 1}]'


def test_definitions_follow_requested_names():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(SlowTool())

    assert [d.name for d in registry.get_definitions(["slow", "missing", "echo"])] == ["slow", "echo"]
    assert registry.list_tools() == ["echo", "slow"]
    assert not registry.is_content_terminal("echo")
