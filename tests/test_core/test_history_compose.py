from parley.config import get_config
from parley.conversation import build_history, combine_system, tool_sequence_errors, with_system
from parley.compose import compose_turn
from parley.llm import Message, ToolCall
from parley.models import Chat, ChatMessage, ChatSettings
from parley.tools import create_default_registry


def _msg(role: str, content: str) -> ChatMessage:
    return ChatMessage(chat_id="c1", role=role, content=content)


def test_history_skips_placeholders_and_keeps_newest_within_budget():
    prior = [
        _msg("user", "u" * 1000),
        _msg("assistant", "a" * 1000),
        _msg("assistant", ""),
        _msg("system", "stored system"),
        _msg("user", "v" * 1000),
    ]

    history = build_history(prior, new_user_content="hi", context_length=1600, max_tokens=1000)

    assert [m.role for m in history] == ["assistant", "user", "user"]
    assert history[-1].content == "hi"
    assert history[0].content.startswith("a")


def test_history_carries_only_image_attachments_of_users():
    prior = [
        ChatMessage(
            chat_id="c1",
            role="user",
            content="look",
            attachments=[{"kind": "image", "data_url": "data:image/png;base64,AA"}, {"kind": "file", "name": "x.txt"}],
        )
    ]

    history = build_history(prior)

    assert history[0].attachments == [{"kind": "image", "data_url": "data:image/png;base64,AA"}]


def test_combine_system_orders_preambles_base_and_sources():
    combined = combine_system("Base prompt", ["Preamble A", "  ", None, "Preamble B"], "Sources:\n1. x")

    assert combined == "Preamble A\n\nPreamble B\n\nBase prompt\n\nSources:\n1. x"
    assert combine_system("", []) is None
    assert combine_system(None, [], "Only sources") == "Only sources"


def test_with_system_replaces_existing_system_entries():
    messages = [Message(role="system", content="old"), Message(role="user", content="hi")]

    result = with_system("new", messages)

    assert [(m.role, m.content) for m in result] == [("system", "new"), ("user", "hi")]
    assert with_system(None, messages) == [messages[1]]


def test_tool_sequence_errors_flags_orphan_results():
    valid = [
        Message(role="user", content="q"),
        Message(role="assistant", content="", tool_calls=[ToolCall(id="c1", name="web_search", arguments={})]),
        Message(role="tool", content="[]", tool_call_id="c1"),
    ]
    orphan = [Message(role="user", content="q"), Message(role="tool", content="[]", tool_call_id="c9")]

    assert tool_sequence_errors(valid) == []
    assert len(tool_sequence_errors(orphan)) == 1


def test_compose_plain_chat_offers_no_tools():
    chat = Chat(settings=ChatSettings(system="Be brief."))

    composition = compose_turn(chat, [], "Hello", create_default_registry())

    assert composition.tools == []
    assert not composition.should_plan
    assert composition.system == "Be brief."
    assert composition.messages[-1].content == "Hello"


def test_compose_search_and_tutor_add_preambles_and_tools():
    chat = Chat(
        settings=ChatSettings(system="Base.", search_enabled=True, tutor_enabled=True, learner_nudge="more_practice")
    )

    composition = compose_turn(chat, [], "Teach me", create_default_registry())

    assert composition.tool_names[0] == "web_search"
    assert "quiz_mcq" in composition.tool_names
    assert "srs_review" in composition.tool_names
    assert composition.should_plan
    system = composition.system or ""
    assert system.index("web_search") < system.index("tutor") < system.index("Base.")
    assert "Learner Preference: more practice" in system


def test_compose_respects_global_tutor_switch_and_extra_tools():
    cfg = get_config().model_copy(deep=True)
    cfg.tutor.enabled = False
    chat = Chat(settings=ChatSettings(tutor_enabled=True, tools=["flashcards", "not_registered"]))

    composition = compose_turn(chat, [], "hi", create_default_registry(), config=cfg)

    assert not composition.tutor_enabled
    assert composition.tool_names == ["flashcards"]
