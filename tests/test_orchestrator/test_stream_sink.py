import asyncio
from dataclasses import replace

import pytest

from parley.abort import AbortController
from parley.exceptions import StreamTransportError
from parley.llm import LLMProvider, LLMResponse, Message, StreamEvent
from parley.models import ChatMessage
from parley.streaming import MessageStreamSink, StreamCallbacks, StreamingGenerator, StreamOutcome


class _StreamProvider(LLMProvider):
    def __init__(self, events: list[StreamEvent], fail_after: int | None = None):
        self.events = events
        self.fail_after = fail_after
        self.closed = False

    async def complete(self, model, messages, tools=None, tool_choice=None, params=None):
        return LLMResponse(content="")

    async def stream(self, model, messages, tools=None, params=None):
        try:
            for index, event in enumerate(self.events):
                if self.fail_after is not None and index == self.fail_after:
                    raise StreamTransportError("connection dropped")
                await asyncio.sleep(0)
                yield event
        finally:
            self.closed = True


def _text(*tokens: str) -> list[StreamEvent]:
    return [StreamEvent(kind="text", data=token) for token in tokens]


class _Recorder:
    def __init__(self):
        self.tokens: list[str] = []
        self.reasoning: list[str] = []
        self.images: list[str] = []
        self.done: list[tuple[str, dict]] = []
        self.errors: list[BaseException] = []

    def callbacks(self) -> StreamCallbacks:
        async def _on_done(text, extras):
            self.done.append((text, extras))

        return StreamCallbacks(
            on_token=self.tokens.append,
            on_reasoning_token=self.reasoning.append,
            on_image=self.images.append,
            on_done=_on_done,
            on_error=self.errors.append,
        )


@pytest.mark.asyncio
async def test_events_arrive_in_order_and_done_fires_once():
    events = [
        StreamEvent(kind="reasoning", data="thinking"),
        *_text("Hel", "", "lo"),
        StreamEvent(kind="image", data="data:image/png;base64,AA"),
        StreamEvent(kind="usage", usage={"prompt_tokens": 5, "completion_tokens": 2}),
    ]
    provider = _StreamProvider(events)
    recorder = _Recorder()

    outcome = await StreamingGenerator(provider).stream(
        [Message(role="user", content="hi")], "m", None, recorder.callbacks(), can_output_images=True
    )

    assert outcome == StreamOutcome.DONE
    assert recorder.tokens == ["Hel", "lo"]
    assert recorder.reasoning == ["thinking"]
    assert recorder.images == ["data:image/png;base64,AA"]
    assert len(recorder.done) == 1
    text, extras = recorder.done[0]
    assert text == "Hello"
    assert extras["usage"] == {"prompt_tokens": 5, "completion_tokens": 2}
    assert extras["metrics"].completion_tokens == 2
    assert recorder.errors == []
    assert provider.closed


@pytest.mark.asyncio
async def test_images_ignored_for_text_only_models():
    recorder = _Recorder()

    await StreamingGenerator(_StreamProvider([StreamEvent(kind="image", data="data:x")])).stream(
        [], "m", None, recorder.callbacks()
    )

    assert recorder.images == []


@pytest.mark.asyncio
async def test_transport_error_reports_once_and_skips_done():
    recorder = _Recorder()

    outcome = await StreamingGenerator(_StreamProvider(_text("a", "b", "c"), fail_after=2)).stream(
        [], "m", None, recorder.callbacks()
    )

    assert outcome == StreamOutcome.ERROR
    assert recorder.tokens == ["a", "b"]
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], StreamTransportError)
    assert recorder.done == []


@pytest.mark.asyncio
async def test_abort_stops_dispatch_without_done_or_error():
    controller = AbortController()
    recorder = _Recorder()
    callbacks = recorder.callbacks()

    def _on_token(token):
        recorder.tokens.append(token)
        if len(recorder.tokens) == 3:
            controller.abort()

    callbacks.on_token = _on_token
    provider = _StreamProvider(_text(*[str(i) for i in range(10)]))

    outcome = await StreamingGenerator(provider).stream([], "m", None, callbacks, signal=controller.signal)

    assert outcome == StreamOutcome.ABORTED
    assert recorder.tokens == ["0", "1", "2"]
    assert recorder.done == []
    assert recorder.errors == []
    assert provider.closed


@pytest.mark.asyncio
async def test_sink_strips_leading_tool_json_while_streaming():
    deltas: list[tuple[str, str]] = []
    published: list[ChatMessage] = []
    sink = MessageStreamSink(
        ChatMessage(chat_id="c", role="assistant"),
        publish=published.append,
        on_delta=lambda kind, delta: deltas.append((kind, delta)),
        buffer_leading=True,
    )

    outcome = await StreamingGenerator(
        _StreamProvider(_text('{"query":', ' "x"}', "\n\nHello", " world"))
    ).stream([], "m", None, sink.callbacks())

    assert outcome == StreamOutcome.DONE
    assert "".join(delta for kind, delta in deltas if kind == "content") == "Hello world"
    assert sink.final.content == "Hello world"
    assert published == [sink.final]
    assert sink.final.metrics is not None


def test_sink_flushes_plain_text_immediately_when_buffering():
    deltas: list[str] = []
    sink = MessageStreamSink(
        ChatMessage(chat_id="c", role="assistant"),
        on_delta=lambda kind, delta: deltas.append(delta),
        buffer_leading=True,
    )

    sink.on_token("  ")
    sink.on_token("Hi")

    assert deltas == ["  Hi"]


def test_sink_releases_oversized_non_tool_json():
    deltas: list[str] = []
    sink = MessageStreamSink(
        ChatMessage(chat_id="c", role="assistant"),
        on_delta=lambda kind, delta: deltas.append(delta),
        buffer_leading=True,
        leading_buffer_chars=10,
    )

    sink.on_token('{"a": 1,')
    assert deltas == []
    sink.on_token(' "b": 2}')

    assert deltas == ['{"a": 1, "b": 2}']


@pytest.mark.asyncio
async def test_commit_is_single_shot_and_persistence_failures_are_swallowed():
    persisted: list[ChatMessage] = []

    async def _persist(message):
        persisted.append(message)
        raise RuntimeError("disk full")

    sink = MessageStreamSink(
        ChatMessage(chat_id="c", role="assistant"),
        persist=_persist,
        finalize=lambda message: replace(message, system_snapshot="sys"),
    )
    sink.on_token("partial")
    sink.on_reasoning_token("why")

    first = await sink.commit()
    second = await sink.commit(content="ignored")

    assert first is second
    assert first.content == "partial"
    assert first.reasoning == "why"
    assert first.system_snapshot == "sys"
    assert len(persisted) == 1


def test_sink_dedupes_generated_images():
    sink = MessageStreamSink(ChatMessage(chat_id="c", role="assistant"))

    sink.on_image("data:image/jpeg;base64,AA")
    sink.on_image("data:image/jpeg;base64,AA")

    assert len(sink.attachments) == 1
    assert sink.attachments[0]["mime"] == "image/jpeg"
    assert sink.attachments[0]["kind"] == "image"
