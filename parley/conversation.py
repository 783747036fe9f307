"""Build the provider conversation from chat history."""

from parley.llm import Message
from parley.models import ChatMessage

DEFAULT_CONTEXT_LENGTH = 8000
DEFAULT_COMPLETION_RESERVE = 1024
MIN_PROMPT_TOKENS = 512


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate (~4 characters per token), never below 1."""
    return max(1, len(text or "") // 4)


def build_history(
    prior: list[ChatMessage],
    new_user_content: str | None = None,
    new_user_attachments: list[dict] | None = None,
    context_length: int = DEFAULT_CONTEXT_LENGTH,
    max_tokens: int | None = None,
) -> list[Message]:
    """Replay prior user/assistant messages that fit the model's prompt budget.

    Empty placeholders and stored system messages are skipped; the most recent
    messages win when the window is exceeded.
    """
    reserve = max_tokens if isinstance(max_tokens, int) and max_tokens > 0 else DEFAULT_COMPLETION_RESERVE
    budget = max(MIN_PROMPT_TOKENS, context_length - reserve)

    history: list[Message] = []
    for entry in prior:
        if entry.role not in ("user", "assistant") or not entry.content:
            continue
        attachments = [a for a in entry.attachments if a.get("kind") == "image"] if entry.role == "user" else []
        history.append(Message(role=entry.role, content=entry.content, attachments=attachments))
    if new_user_content is not None:
        history.append(Message(role="user", content=new_user_content, attachments=list(new_user_attachments or [])))

    kept: list[Message] = []
    running = 0
    for message in reversed(history):
        tokens = estimate_tokens(message.content)
        if running + tokens > budget:
            break
        kept.append(message)
        running += tokens
    kept.reverse()
    return kept


def combine_system(
    base_system: str | None,
    preambles: list[str | None] | None = None,
    sources_appendix: str | None = None,
) -> str | None:
    """Join preambles, the base system prompt and an optional sources block."""
    parts = [p.strip() for p in (preambles or []) if isinstance(p, str) and p.strip()]
    if isinstance(base_system, str) and base_system.strip():
        parts.append(base_system.strip())
    appendix = sources_appendix.strip() if isinstance(sources_appendix, str) else ""
    if not parts and not appendix:
        return None
    combined = "\n\n".join(parts)
    if appendix:
        combined = f"{combined}\n\n{appendix}" if combined else appendix
    return combined


def with_system(system: str | None, messages: list[Message]) -> list[Message]:
    """Return a copy of ``messages`` whose only system entry is ``system``."""
    rest = [m for m in messages if m.role != "system"]
    if system:
        return [Message(role="system", content=system), *rest]
    return rest


def tool_sequence_errors(messages: list[Message]) -> list[str]:
    """List violations of the tool-entry correlation rule.

    Every ``tool`` entry must answer a call id from the closest preceding
    ``assistant`` entry, with only other ``tool`` entries in between.
    """
    errors: list[str] = []
    open_ids: set[str] | None = None
    for index, message in enumerate(messages):
        if message.role == "assistant":
            open_ids = {call.id for call in message.tool_calls}
            continue
        if message.role == "tool":
            if open_ids is None or message.tool_call_id not in open_ids:
                errors.append(f"entry {index}: tool result {message.tool_call_id!r} has no matching call")
            continue
        open_ids = None
    return errors
