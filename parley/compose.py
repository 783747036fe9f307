"""Assemble the per-turn request pieces from chat settings and history."""

from dataclasses import dataclass, field

from parley.config import Config, get_config
from parley.conversation import build_history, combine_system
from parley.instructions import (
    SEARCH_PREAMBLE,
    TUTOR_PREAMBLE,
    InstructionLoader,
    get_instruction_loader,
)
from parley.llm import Message, ToolDefinition
from parley.models import Chat, ChatMessage
from parley.tools.registry import ToolRegistry
from parley.tools.tutor import TUTOR_TOOL_NAMES
from parley.tools.web_search import WebSearchTool


@dataclass
class TurnComposition:
    """Everything a model session needs to run one turn."""

    system: str | None
    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    search_enabled: bool = False
    tutor_enabled: bool = False

    @property
    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]

    @property
    def should_plan(self) -> bool:
        """Planning runs only when some tool (search, tutoring or other) is offered."""
        return bool(self.tools)


def compose_turn(
    chat: Chat,
    prior: list[ChatMessage],
    new_user_content: str | None,
    registry: ToolRegistry,
    attachments: list[dict] | None = None,
    model_id: str | None = None,
    loader: InstructionLoader | None = None,
    config: Config | None = None,
) -> TurnComposition:
    """Build system prompt, replayed history and tool list for one turn."""
    cfg = config or get_config()
    loader = loader or get_instruction_loader()
    settings = chat.settings

    search_enabled = settings.search_enabled and registry.has_tool(WebSearchTool.name)
    tutor_enabled = settings.tutor_enabled and cfg.tutor.enabled

    names: list[str] = []
    if search_enabled:
        names.append(WebSearchTool.name)
    if tutor_enabled:
        names.extend(name for name in TUTOR_TOOL_NAMES if registry.has_tool(name))
    for name in settings.tools:
        if name not in names and registry.has_tool(name):
            names.append(name)

    preambles: list[str] = []
    if search_enabled:
        preambles.append(loader.load(SEARCH_PREAMBLE))
    if tutor_enabled:
        preambles.append(loader.load(TUTOR_PREAMBLE))
        if settings.learner_nudge:
            preambles.append(f"Learner Preference: {settings.learner_nudge.replace('_', ' ')}")

    capabilities = cfg.provider.capabilities(model_id or settings.model or cfg.provider.default_model)
    messages = build_history(
        prior,
        new_user_content=new_user_content,
        new_user_attachments=attachments,
        context_length=capabilities.context_length,
        max_tokens=settings.max_tokens,
    )

    return TurnComposition(
        system=combine_system(settings.system, preambles),
        messages=messages,
        tools=registry.get_definitions(names),
        search_enabled=search_enabled,
        tutor_enabled=tutor_enabled,
    )
