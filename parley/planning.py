"""Bounded tool negotiation that runs before final generation.

Each round is one non-streaming completion. When the model asks for tools they
run one after another, their results are appended to the session's private
conversation, and a short follow-up nudge asks the model to continue. The loop
ends when a round produces no tool calls or when ``max_rounds`` is reached.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from parley.abort import run_abortable
from parley.config import get_config
from parley.conversation import combine_system, with_system
from parley.exceptions import ToolExecutionError
from parley.instructions import (
    DEFAULT_SYSTEM,
    FOLLOW_UP_DEFAULT,
    FOLLOW_UP_SEARCH,
    SOURCES_BLOCK,
    InstructionLoader,
    get_instruction_loader,
)
from parley.llm import GenerationParams, LLMProvider, Message, ToolCall, ToolDefinition
from parley.logging import get_logger
from parley.notices import NOTICE_MISSING_SEARCH_KEY
from parley.parsers import extract_echoed_tool_calls, strip_leading_tool_json
from parley.tools.registry import ToolContext, ToolRegistry, ToolResult
from parley.tools.web_search import merge_search_results

log = get_logger(__name__)


class PlanState(str, Enum):
    REQUESTING = "requesting"
    TOOLS_REQUESTED = "tools_requested"
    EXECUTING = "executing"
    FINALIZED = "finalized"


@dataclass
class PlanResult:
    """Outcome of the planning loop for one model session."""

    final_system: str
    conversation: list[Message]
    candidate_text: str = ""
    rounds: int = 0
    state: PlanState = PlanState.FINALIZED
    tools_used: list[str] = field(default_factory=list)
    used_content_tool: bool = False
    sources: list[dict[str, Any]] = field(default_factory=list)
    notice: str | None = None

    @property
    def has_sources(self) -> bool:
        return bool(self.sources)

    @property
    def short_circuit(self) -> bool:
        """A content-terminal tool already produced the answer and nothing needs citing."""
        return self.used_content_tool and not self.has_sources

    @property
    def hit_round_limit(self) -> bool:
        return self.state != PlanState.FINALIZED


def format_sources_block(
    sources: list[dict[str, Any]],
    max_sources: int = 5,
    provider_label: str = "Brave",
    loader: InstructionLoader | None = None,
) -> str:
    """Numbered list of sources for the final system prompt, or "" when empty."""
    lines = []
    for index, source in enumerate(sources[:max_sources], start=1):
        title = source.get("title") or source.get("url") or "Result"
        line = f"{index}. {title} - {source.get('url') or ''}"
        if source.get("description"):
            line += f" - {source['description']}"
        lines.append(line)
    if not lines:
        return ""
    loader = loader or get_instruction_loader()
    return loader.render(SOURCES_BLOCK, provider=provider_label, lines="\n".join(lines))


def _unique_call_ids(calls: list[ToolCall], round_index: int) -> list[ToolCall]:
    seen: set[str] = set()
    result: list[ToolCall] = []
    for index, call in enumerate(calls):
        call_id = call.id
        if not call_id or call_id in seen:
            call_id = f"call_{round_index}_{index}"
        seen.add(call_id)
        result.append(ToolCall(id=call_id, name=call.name, arguments=dict(call.arguments or {})))
    return result


class PlanningLoop:
    """Run tool negotiation rounds for one model."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        max_rounds: int | None = None,
        max_sources: int | None = None,
        loader: InstructionLoader | None = None,
    ):
        cfg = get_config().planning
        self.provider = provider
        self.registry = registry
        self.max_rounds = max(1, int(max_rounds if max_rounds is not None else cfg.max_rounds))
        self.max_sources = max(1, int(max_sources if max_sources is not None else cfg.max_sources))
        self.loader = loader or get_instruction_loader()

    async def run(
        self,
        *,
        model_id: str,
        system: str | None,
        messages: list[Message],
        tools: list[ToolDefinition],
        context: ToolContext,
        params: GenerationParams | None = None,
        search_enabled: bool = False,
        supports_tools: bool = True,
    ) -> PlanResult:
        """Negotiate tools and return the finalized system prompt.

        Raises:
            LLMAPIError: provider failures (unauthorized, rate limited, ...)
            TurnAborted: if the context's signal fires
        """
        signal = context.signal
        convo = with_system(system, messages)
        tool_names = [tool.name for tool in tools]
        tools_for_request = tools if (tools and supports_tools) else None
        follow_up = self.loader.load(FOLLOW_UP_SEARCH if search_enabled else FOLLOW_UP_DEFAULT)

        result = PlanResult(final_system="", conversation=convo, state=PlanState.REQUESTING)
        sources: list[dict[str, Any]] = []

        while result.rounds < self.max_rounds:
            result.state = PlanState.REQUESTING
            request = self.provider.complete(
                model_id,
                list(convo),
                tools=tools_for_request,
                tool_choice="auto" if tools_for_request else None,
                params=params,
            )
            response = await (run_abortable(request, signal) if signal is not None else request)

            calls = list(response.tool_calls)
            assistant_text = response.content or ""
            if not calls and tool_names:
                calls = extract_echoed_tool_calls(assistant_text, tool_names)
                if calls:
                    log.info("Recovered echoed tool calls", model=model_id, count=len(calls))
                    assistant_text = ""

            if not calls:
                result.candidate_text = strip_leading_tool_json(assistant_text)
                result.state = PlanState.FINALIZED
                break

            result.state = PlanState.TOOLS_REQUESTED
            calls = _unique_call_ids(calls, result.rounds)
            convo.append(Message(role="assistant", content=assistant_text, tool_calls=calls))

            result.state = PlanState.EXECUTING
            for call in calls:
                content = await self._execute(call, context, result, sources)
                convo.append(
                    Message(role="tool", content=content, tool_call_id=call.id, tool_name=call.name)
                )

            convo.append(Message(role="user", content=follow_up))
            result.rounds += 1
            log.debug("Planning round complete", model=model_id, round=result.rounds, tools=[c.name for c in calls])

        if result.hit_round_limit:
            log.info("Planning round limit reached", model=model_id, rounds=result.rounds)

        result.sources = sources[: self.max_sources]
        base_system = system if system and system.strip() else self.loader.load(DEFAULT_SYSTEM)
        appendix = format_sources_block(result.sources, self.max_sources, loader=self.loader) if sources else None
        result.final_system = combine_system(base_system, [], appendix) or base_system
        return result

    async def _execute(
        self,
        call: ToolCall,
        context: ToolContext,
        result: PlanResult,
        sources: list[dict[str, Any]],
    ) -> str:
        """Run one tool call and return the content of its tool entry."""
        try:
            outcome = await self.registry.execute(call.name, call.arguments, context)
        except ToolExecutionError as e:
            log.warning("Tool failed during planning", tool=call.name, error=str(e))
            outcome = ToolResult(ok=False, error=str(e))

        if not outcome.handled:
            return outcome.to_content()

        result.tools_used.append(call.name)

        if self.registry.is_grounding(call.name):
            found = outcome.payload if outcome.ok and isinstance(outcome.payload, list) else []
            if not outcome.ok and outcome.error == NOTICE_MISSING_SEARCH_KEY:
                result.notice = NOTICE_MISSING_SEARCH_KEY
                context.state.set_notice(NOTICE_MISSING_SEARCH_KEY)
            if not found:
                return "No results"
            sources[:] = merge_search_results([sources, found])
            return json.dumps(found, ensure_ascii=False)

        if outcome.ok and self.registry.is_content_terminal(call.name):
            result.used_content_tool = True
        return outcome.to_content()
