"""Streaming generation: provider events to caller callbacks, and the message sink."""

import inspect
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from parley.abort import AbortSignal, run_abortable
from parley.exceptions import TurnAborted
from parley.llm import GenerationParams, LLMProvider, Message
from parley.logging import get_logger
from parley.metrics import StreamMetrics, compute_metrics, now_ms
from parley.models import ChatMessage
from parley.parsers import looks_like_tool_json, strip_leading_tool_json

log = get_logger(__name__)

Callback = Callable[..., Any]


class StreamOutcome(str, Enum):
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class StreamCallbacks:
    """Per-event hooks; each may be a plain function or a coroutine function."""

    on_token: Callback | None = None
    on_reasoning_token: Callback | None = None
    on_image: Callback | None = None
    on_done: Callback | None = None
    on_error: Callback | None = None


async def _call(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class StreamingGenerator:
    """Issue one streaming completion and dispatch its events in arrival order.

    No retries happen here. Once ``on_error`` fires nothing else does, and
    ``on_done`` fires at most once after the transport finishes. When the
    signal aborts, dispatch stops and neither ``on_done`` nor ``on_error`` is
    called.
    """

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def stream(
        self,
        messages: list[Message],
        model_id: str,
        params: GenerationParams | None,
        callbacks: StreamCallbacks,
        signal: AbortSignal | None = None,
        can_output_images: bool = False,
    ) -> StreamOutcome:
        if signal is not None and signal.aborted:
            return StreamOutcome.ABORTED

        started_at = now_ms()
        state: dict[str, Any] = {"first_token_at": None, "usage": None, "text": []}

        async def _consume() -> None:
            events = self.provider.stream(model_id, list(messages), params=params)
            try:
                async for event in events:
                    if signal is not None and signal.aborted:
                        return
                    if event.kind == "text":
                        if not event.data:
                            continue
                        if state["first_token_at"] is None:
                            state["first_token_at"] = now_ms()
                        state["text"].append(event.data)
                        await _call(callbacks.on_token, event.data)
                    elif event.kind == "reasoning":
                        if event.data:
                            await _call(callbacks.on_reasoning_token, event.data)
                    elif event.kind == "image":
                        if can_output_images and event.data:
                            await _call(callbacks.on_image, event.data)
                    elif event.kind == "usage":
                        state["usage"] = event.usage
                    if signal is not None and signal.aborted:
                        return
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

        try:
            if signal is not None:
                await run_abortable(_consume(), signal)
            else:
                await _consume()
        except TurnAborted:
            log.info("Stream aborted", model=model_id)
            return StreamOutcome.ABORTED
        except Exception as e:
            if signal is not None and signal.aborted:
                return StreamOutcome.ABORTED
            log.warning("Stream failed", model=model_id, error=str(e))
            await _call(callbacks.on_error, e)
            return StreamOutcome.ERROR

        if signal is not None and signal.aborted:
            return StreamOutcome.ABORTED

        metrics = compute_metrics(
            started_at,
            first_token_at=state["first_token_at"],
            finished_at=now_ms(),
            usage=state["usage"],
        )
        full_text = "".join(state["text"])
        try:
            await _call(callbacks.on_done, full_text, {"usage": state["usage"], "metrics": metrics})
        except Exception as e:
            log.error("on_done callback failed", model=model_id, error=str(e))
        return StreamOutcome.DONE


class MessageStreamSink:
    """Turns stream callbacks into updates of one assistant message.

    Deltas accumulate in a draft and are reported through ``on_delta``; the
    message itself is written once, by :meth:`commit`, then persisted.
    """

    def __init__(
        self,
        message: ChatMessage,
        publish: Callable[[ChatMessage], None] | None = None,
        persist: Callable[[ChatMessage], Awaitable[None]] | None = None,
        on_delta: Callable[[str, str], None] | None = None,
        buffer_leading: bool = False,
        leading_buffer_chars: int = 512,
        finalize: Callable[[ChatMessage], ChatMessage] | None = None,
    ):
        self.message = message
        self.publish = publish
        self.persist = persist
        self.on_delta = on_delta
        self.finalize = finalize
        self.buffer_leading = buffer_leading
        self.leading_buffer_chars = leading_buffer_chars

        self.content = message.content or ""
        self.reasoning = message.reasoning or ""
        self.attachments: list[dict[str, Any]] = list(message.attachments)
        self.error: BaseException | None = None
        self.final: ChatMessage | None = None
        self._started = not buffer_leading
        self._leading = ""

    def set_leading_buffer(self, enabled: bool) -> None:
        """Hold back leading output until it is clear it is not echoed tool JSON."""
        self.buffer_leading = enabled
        self._started = not enabled

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_token=self.on_token,
            on_reasoning_token=self.on_reasoning_token,
            on_image=self.on_image,
            on_done=self.on_done,
            on_error=self.on_error,
        )

    def _emit(self, kind: str, delta: str) -> None:
        if self.on_delta is not None and delta:
            self.on_delta(kind, delta)

    def _flush_content(self, delta: str) -> None:
        self.content += delta
        self._emit("content", delta)

    def on_token(self, delta: str) -> None:
        if self._started:
            self._flush_content(delta)
            return
        self._leading += delta
        if looks_like_tool_json(self._leading):
            stripped = strip_leading_tool_json(self._leading)
            if stripped and not looks_like_tool_json(stripped):
                self._started = True
                self._leading = ""
                self._flush_content(stripped)
            elif len(self._leading) > self.leading_buffer_chars:
                self._started = True
                pending, self._leading = self._leading, ""
                self._flush_content(pending)
        elif self._leading.strip():
            self._started = True
            pending, self._leading = self._leading, ""
            self._flush_content(pending)

    def on_reasoning_token(self, delta: str) -> None:
        self.reasoning += delta
        self._emit("reasoning", delta)

    def on_image(self, data_url: str) -> None:
        if any(a.get("kind") == "image" and a.get("data_url") == data_url for a in self.attachments):
            return
        mime = "image/png"
        if data_url.startswith("data:") and ";" in data_url:
            mime = data_url[5:data_url.index(";")] or mime
        self.attachments.append(
            {"id": str(uuid.uuid4()), "kind": "image", "name": "generated", "mime": mime, "data_url": data_url}
        )
        self._emit("image", data_url)

    def on_error(self, error: BaseException) -> None:
        self.error = error

    async def on_done(self, full_text: str, extras: dict[str, Any] | None = None) -> None:
        extras = extras or {}
        content = full_text if full_text else self.content + self._leading
        if self.buffer_leading:
            content = strip_leading_tool_json(content)
        await self.commit(content=content, metrics=extras.get("metrics"))

    async def commit(self, content: str | None = None, metrics: StreamMetrics | None = None) -> ChatMessage:
        """Write the final message exactly once and hand it to persistence.

        Later calls return the already committed message unchanged.
        """
        if self.final is not None:
            return self.final
        if content is None:
            content = self.content + self._leading
            self._leading = ""
        final = replace(
            self.message,
            content=content,
            reasoning=self.reasoning or None,
            attachments=list(self.attachments),
            metrics=metrics,
        )
        if self.finalize is not None:
            final = self.finalize(final)
        self.final = final
        if self.publish is not None:
            self.publish(final)
        if self.persist is not None:
            try:
                await self.persist(final)
            except Exception as e:
                log.warning("Persisting message failed", message_id=final.id, error=str(e))
        return final
