"""Turn orchestration: one user input to one or more streamed assistant messages.

The orchestrator owns every abort controller it creates. A send (or compare
run) gets an :class:`~parley.abort.AbortGraph` registered under its chat; each
participating model gets a child controller that is released as soon as that
model's session ends. Sessions run concurrently on the event loop and fail
independently: errors are turned into notices at the session boundary and
never raised to the caller.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

from parley.abort import AbortGraph, ControllerRegistry
from parley.compose import compose_turn
from parley.config import Config, get_config
from parley.conversation import with_system
from parley.exceptions import TurnAborted
from parley.instructions import InstructionLoader, get_instruction_loader
from parley.llm import GenerationParams, LLMProvider, get_provider
from parley.logging import get_logger
from parley.models import Chat, ChatMessage, SessionStatus, TurnSession
from parley.notices import notice_for_error
from parley.planning import PlanningLoop
from parley.state import COMPARE_SECTION, IS_STREAMING, NOTICE, TUTOR_SECTION, StateStore
from parley.store import MessageStore
from parley.streaming import MessageStreamSink, StreamingGenerator, StreamOutcome
from parley.tools.registry import ToolContext, ToolRegistry, get_tool_registry
from parley.tools.web_search import SearchProvider

log = get_logger(__name__)

# (message_id, kind, delta) with kind in content | reasoning | image
DeltaListener = Callable[[str, str, str], None]


@dataclass
class TurnResult:
    """What a send, compare or regenerate produced."""

    chat_id: str
    sessions: list[TurnSession] = field(default_factory=list)
    messages: dict[str, ChatMessage] = field(default_factory=dict)  # by model id
    user_message: ChatMessage | None = None

    def status(self, model_id: str) -> SessionStatus | None:
        for session in self.sessions:
            if session.model_id == model_id:
                return session.status
        return None


@dataclass
class _SessionTarget:
    """Where a session's final message goes."""

    placeholder: ChatMessage
    publish: Callable[[ChatMessage], None]
    persist: Callable[[ChatMessage], Awaitable[None]] | None
    prior: list[ChatMessage]
    user_text: str
    attachments: list[dict[str, Any]]
    compare: bool = False


def _unique(model_ids: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for model_id in model_ids:
        if model_id and model_id not in seen:
            seen.add(model_id)
            result.append(model_id)
    return result


def _compare_key(chat_id: str) -> str:
    return f"compare:{chat_id}"


class TurnOrchestrator:
    """Coordinate planning, streaming, cancellation and persistence per turn."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        registry: ToolRegistry | None = None,
        state: StateStore | None = None,
        store: MessageStore | None = None,
        search: SearchProvider | None = None,
        providers: dict[str, LLMProvider] | None = None,
        loader: InstructionLoader | None = None,
        config: Config | None = None,
        on_delta: DeltaListener | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            provider: Default provider; resolved lazily from config when omitted
            registry: Tool registry (defaults to the global one)
            state: Shared UI state container
            store: Persistence collaborator; ``None`` disables persistence
            search: Search backend handed to tools through the tool context
            providers: Per-model provider overrides
            loader: Prompt template loader
            config: Configuration (defaults to the global one)
            on_delta: Observer for streamed content, reasoning and images
        """
        self.config = config or get_config()
        self.provider = provider
        self.providers = dict(providers or {})
        self.registry = registry or get_tool_registry()
        self.state = state or StateStore()
        self.store = store
        self.search = search
        self.loader = loader or get_instruction_loader()
        self.on_delta = on_delta
        self.controllers = ControllerRegistry()
        self._active_turns = 0

    # Public API

    async def send(
        self,
        chat: Chat,
        content: str,
        model_ids: list[str] | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> TurnResult:
        """Append a user message and generate one assistant message per model."""
        models = _unique(model_ids or [self._default_model(chat)])
        prior = list(chat.messages)
        user_message = ChatMessage(chat_id=chat.id, role="user", content=content, attachments=list(attachments or []))
        chat.messages.append(user_message)
        if chat.title == "New Chat":
            chat.title = content.strip()[:40] or "New Chat"
        await self._persist(user_message)

        graph = self.controllers.start(chat.id)
        targets: dict[str, _SessionTarget] = {}
        for model_id in models:
            placeholder = ChatMessage(chat_id=chat.id, role="assistant", model=model_id)
            chat.messages.append(placeholder)
            targets[model_id] = _SessionTarget(
                placeholder=placeholder,
                publish=chat.replace_message,
                persist=self._persist,
                prior=prior,
                user_text=content,
                attachments=list(attachments or []),
            )

        result = await self._run_turn(chat, chat.id, graph, targets)
        result.user_message = user_message
        return result

    async def compare(self, chat: Chat, prompt: str, model_ids: list[str]) -> TurnResult:
        """Run one prompt against several models side by side.

        Runs are recorded under the ``compare_runs`` state section and do not
        change the chat's messages.
        """
        models = _unique(model_ids)
        key = _compare_key(chat.id)
        graph = self.controllers.start(key)
        self.state.set_state({COMPARE_SECTION: {m: {"status": SessionStatus.PENDING.value, "prompt": prompt} for m in models}})

        targets: dict[str, _SessionTarget] = {}
        for model_id in models:
            placeholder = ChatMessage(chat_id=chat.id, role="assistant", model=model_id)
            targets[model_id] = _SessionTarget(
                placeholder=placeholder,
                publish=self._compare_publisher(model_id),
                persist=None,
                prior=list(chat.messages),
                user_text=prompt,
                attachments=[],
                compare=True,
            )
        return await self._run_turn(chat, key, graph, targets)

    async def regenerate(self, chat: Chat, message_id: str, model_id: str | None = None) -> TurnResult:
        """Generate a replacement for an assistant message, keeping its id and position."""
        index = next((i for i, m in enumerate(chat.messages) if m.id == message_id), None)
        if index is None or chat.messages[index].role != "assistant":
            log.warning("Regenerate target not found", chat_id=chat.id, message_id=message_id)
            return TurnResult(chat_id=chat.id)
        original = chat.messages[index]
        user_index = next((i for i in range(index - 1, -1, -1) if chat.messages[i].role == "user"), None)
        if user_index is None:
            log.warning("Regenerate target has no user message", chat_id=chat.id, message_id=message_id)
            return TurnResult(chat_id=chat.id)

        user_message = chat.messages[user_index]
        target_model = model_id or original.model or self._default_model(chat)
        placeholder = ChatMessage(
            id=original.id,
            chat_id=chat.id,
            role="assistant",
            model=target_model,
            created_at=original.created_at,
        )
        graph = self.controllers.start(chat.id)
        targets = {
            target_model: _SessionTarget(
                placeholder=placeholder,
                publish=chat.replace_message,
                persist=self._persist,
                prior=chat.messages[:user_index],
                user_text=user_message.content,
                attachments=list(user_message.attachments),
            )
        }
        result = await self._run_turn(chat, chat.id, graph, targets)
        result.user_message = user_message
        return result

    def abort(self, chat_id: str) -> bool:
        """Abort the chat's running send and compare run, if any."""
        aborted = self.controllers.abort(chat_id)
        return self.controllers.abort(_compare_key(chat_id)) or aborted

    def abort_model(self, chat_id: str, model_id: str) -> bool:
        """Abort one model's session without touching its siblings."""
        for key in (chat_id, _compare_key(chat_id)):
            graph = self.controllers.get(key)
            if graph is not None and graph.abort_child(model_id):
                return True
        return False

    def abort_all(self) -> None:
        self.controllers.abort_all()

    async def close(self) -> None:
        self.abort_all()
        await self.registry.close()
        if self.store is not None:
            await self.store.close()

    # Turn plumbing

    def _default_model(self, chat: Chat) -> str:
        return chat.settings.model or self.config.provider.default_model

    def _resolve_provider(self, model_id: str) -> LLMProvider:
        if model_id in self.providers:
            return self.providers[model_id]
        if self.provider is None:
            self.provider = get_provider()
        return self.provider

    async def _persist(self, message: ChatMessage) -> None:
        """Best-effort persistence; failures are logged and swallowed."""
        if self.store is None:
            return
        try:
            await self.store.save_message(message)
        except Exception as e:
            log.warning("Persisting message failed", message_id=message.id, error=str(e))

    def _compare_publisher(self, model_id: str) -> Callable[[ChatMessage], None]:
        def _publish(message: ChatMessage) -> None:
            self.state.merge_message_state(
                COMPARE_SECTION,
                model_id,
                {
                    "content": message.content,
                    "reasoning": message.reasoning,
                    "images": [a.get("data_url") for a in message.attachments if a.get("kind") == "image"],
                    "metrics": message.metrics.to_dict() if message.metrics else None,
                },
            )

        return _publish

    async def _run_turn(
        self,
        chat: Chat,
        key: str,
        graph: AbortGraph,
        targets: dict[str, _SessionTarget],
    ) -> TurnResult:
        sessions = [
            TurnSession(
                model_id=model_id,
                assistant_message_id=target.placeholder.id,
                controller=graph.child(model_id),
            )
            for model_id, target in targets.items()
        ]
        result = TurnResult(chat_id=chat.id, sessions=sessions)

        self._active_turns += 1
        self.state.set_state({IS_STREAMING: True, NOTICE: None})
        log.info("Turn started", chat_id=chat.id, models=list(targets))
        try:
            finals = await asyncio.gather(
                *(self._run_session(chat, graph, session, targets[session.model_id]) for session in sessions)
            )
        finally:
            self.controllers.clear(key, graph)
            self._active_turns -= 1
            if self._active_turns == 0:
                self.state.set_state({IS_STREAMING: False})

        for session, final in zip(sessions, finals):
            if final is not None:
                result.messages[session.model_id] = final
        log.info(
            "Turn finished",
            chat_id=chat.id,
            statuses={s.model_id: s.status.value for s in sessions},
        )
        return result

    def _session_params(self, chat: Chat, model_id: str) -> GenerationParams:
        settings = chat.settings
        caps = self.config.provider.capabilities(model_id)
        return GenerationParams(
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_tokens=settings.max_tokens,
            reasoning_effort=settings.reasoning_effort if caps.supports_reasoning else None,
            modalities=["image", "text"] if caps.can_output_images else None,
        )

    async def _run_session(
        self,
        chat: Chat,
        graph: AbortGraph,
        session: TurnSession,
        target: _SessionTarget,
    ) -> ChatMessage | None:
        """Plan and stream for one model; every failure ends here."""
        model_id = session.model_id
        signal = session.controller.signal
        system_snapshot: dict[str, str | None] = {"value": None}

        def _finalize(message: ChatMessage) -> ChatMessage:
            tutor = self.state.get_message_state(TUTOR_SECTION, message.id)
            return replace(
                message,
                tutor=tutor or message.tutor,
                system_snapshot=system_snapshot["value"],
            )

        def _on_delta(kind: str, delta: str) -> None:
            if target.compare and kind == "content":
                self.state.merge_message_state(COMPARE_SECTION, model_id, {"content": sink.content})
            if self.on_delta is not None:
                self.on_delta(target.placeholder.id, kind, delta)

        sink = MessageStreamSink(
            target.placeholder,
            publish=target.publish,
            persist=target.persist,
            on_delta=_on_delta,
            leading_buffer_chars=self.config.stream.leading_buffer_chars,
            finalize=_finalize,
        )

        def _set_status(status: SessionStatus, error: str | None = None) -> None:
            if status.terminal:
                session.finish(status, error)
            else:
                session.status = status
            if target.compare:
                self.state.merge_message_state(
                    COMPARE_SECTION, model_id, {"status": session.status.value, "error": session.error}
                )

        try:
            provider = self._resolve_provider(model_id)
            caps = self.config.provider.capabilities(model_id)
            params = self._session_params(chat, model_id)
            composition = compose_turn(
                chat,
                target.prior,
                target.user_text,
                self.registry,
                attachments=target.attachments,
                model_id=model_id,
                loader=self.loader,
                config=self.config,
            )
            messages = with_system(composition.system, composition.messages)
            system_snapshot["value"] = composition.system

            if composition.should_plan:
                _set_status(SessionStatus.PLANNING)
                sink.set_leading_buffer(self.config.stream.strip_leading_tool_json)
                context = ToolContext(
                    chat_id=chat.id,
                    assistant_message_id=target.placeholder.id,
                    state=self.state,
                    user_text=target.user_text,
                    model_id=model_id,
                    store=self.store,
                    search=self.search,
                    signal=signal,
                )
                plan = await PlanningLoop(provider, self.registry, loader=self.loader).run(
                    model_id=model_id,
                    system=composition.system,
                    messages=composition.messages,
                    tools=composition.tools,
                    context=context,
                    params=params,
                    search_enabled=composition.search_enabled,
                    supports_tools=caps.supports_tools,
                )
                system_snapshot["value"] = plan.final_system
                if plan.short_circuit:
                    session.short_circuited = True
                    final = await sink.commit(content=plan.candidate_text)
                    _set_status(SessionStatus.DONE)
                    log.info("Turn short-circuited by content tool", chat_id=chat.id, model=model_id)
                    return final
                messages = with_system(plan.final_system, composition.messages)

            _set_status(SessionStatus.STREAMING)
            outcome = await StreamingGenerator(provider).stream(
                messages,
                model_id,
                params,
                sink.callbacks(),
                signal=signal,
                can_output_images=caps.can_output_images,
            )
            if outcome == StreamOutcome.DONE:
                _set_status(SessionStatus.DONE)
                return sink.final
            if outcome == StreamOutcome.ERROR:
                return await self._fail(session, sink, sink.error, _set_status)
            final = await sink.commit()
            _set_status(SessionStatus.ABORTED)
            return final
        except TurnAborted:
            final = await sink.commit()
            _set_status(SessionStatus.ABORTED)
            log.info("Session aborted", chat_id=chat.id, model=model_id)
            return final
        except Exception as e:
            return await self._fail(session, sink, e, _set_status)
        finally:
            graph.release(model_id)

    async def _fail(
        self,
        session: TurnSession,
        sink: MessageStreamSink,
        error: BaseException | None,
        set_status: Callable[..., None],
    ) -> ChatMessage:
        notice = notice_for_error(error)
        log.warning("Session failed", model=session.model_id, error=str(error) if error else None)
        if notice:
            self.state.set_notice(notice)
        final = await sink.commit()
        set_status(SessionStatus.ERROR, notice)
        return final
