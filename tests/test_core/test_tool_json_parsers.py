from parley.parsers import (
    extract_echoed_tool_calls,
    iter_json_objects,
    looks_like_tool_json,
    parse_json_after,
    strip_leading_tool_json,
)


def test_recovers_named_call_and_clamps_search_count():
    text = '{"name": "web_search", "arguments": {"query": "rust async runtimes", "count": 20}}'

    calls = extract_echoed_tool_calls(text, ["web_search"])

    assert len(calls) == 1
    assert calls[0].name == "web_search"
    assert calls[0].arguments == {"query": "rust async runtimes", "count": 10}
    assert calls[0].id == "inline_web_search_0"


def test_recovers_string_encoded_arguments():
    text = '{"name": "flashcards", "arguments": "{\\"items\\": [{\\"front\\": \\"a\\", \\"back\\": \\"b\\"}]}"}'

    calls = extract_echoed_tool_calls(text, ["flashcards"])

    assert calls[0].arguments == {"items": [{"front": "a", "back": "b"}]}


def test_bare_query_object_becomes_search_call():
    calls = extract_echoed_tool_calls('Searching... {"query": "weather zagreb", "count": 3}', ["web_search"])

    assert [(c.name, c.arguments) for c in calls] == [("web_search", {"query": "weather zagreb", "count": 3})]


def test_name_prefixed_payload_is_recovered():
    text = 'quiz_mcq: {"items": [{"question": "2+2?", "choices": ["3", "4"], "correct": 1}]}'

    calls = extract_echoed_tool_calls(text, ["quiz_mcq"])

    assert len(calls) == 1
    assert calls[0].name == "quiz_mcq"
    assert calls[0].arguments["items"][0]["correct"] == 1


def test_plain_text_and_unoffered_tools_yield_nothing():
    assert extract_echoed_tool_calls("The answer is 4.", ["web_search"]) == []
    assert extract_echoed_tool_calls('{"name": "delete_everything", "arguments": {}}', ["web_search"]) == []
    assert extract_echoed_tool_calls('{"query": "x"}', []) == []


def test_strip_leading_bare_and_fenced_tool_json():
    assert strip_leading_tool_json('{"query": "x"}\n\nHello there') == "Hello there"
    fenced = '```json\n{"name": "web_search", "arguments": {"query": "x"}}\n```\nAnswer [1]'
    assert strip_leading_tool_json(fenced) == "Answer [1]"


def test_strip_keeps_unrelated_json_and_prose():
    assert strip_leading_tool_json('{"a": 1} is a JSON object') == '{"a": 1} is a JSON object'
    assert strip_leading_tool_json("No JSON here") == "No JSON here"


def test_json_scanning_helpers():
    assert parse_json_after('prefix {"a": {"b": "}"}} tail') == {"a": {"b": "}"}}
    assert parse_json_after("no object") is None
    assert list(iter_json_objects('{"a": 1} junk {bad} {"b": 2}')) == [{"a": 1}, {"b": 2}]
    assert looks_like_tool_json('  {"q"')
    assert looks_like_tool_json("```json")
    assert not looks_like_tool_json("Hello")
