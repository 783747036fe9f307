"""OpenRouter provider - OpenAI-style chat completions over httpx."""

import json
import os
from typing import Any, AsyncIterator

import httpx

from parley.exceptions import (
    LLMAPIError,
    LLMError,
    StreamTransportError,
    UnauthorizedError,
    classify_status,
)
from parley.llm import (
    GenerationParams,
    LLMProvider,
    LLMResponse,
    Message,
    StreamEvent,
    ToolCall,
    ToolDefinition,
)
from parley.logging import get_logger

log = get_logger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def parse_tool_call_arguments(raw: Any) -> dict[str, Any]:
    """Decode a tool-call arguments payload into a dict, tolerating bad JSON."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def normalize_tool_calls(message: dict[str, Any]) -> list[ToolCall]:
    """Read structured tool calls (or the legacy function_call) off a response message."""
    calls: list[ToolCall] = []
    raw_calls = message.get("tool_calls") if isinstance(message, dict) else None
    for index, call in enumerate(raw_calls or []):
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        name = str(function.get("name") or "").strip()
        if not name:
            continue
        call_id = call.get("id") if isinstance(call.get("id"), str) and call.get("id") else f"call_{index}"
        calls.append(ToolCall(id=call_id, name=name, arguments=parse_tool_call_arguments(function.get("arguments"))))
    if calls:
        return calls

    legacy = message.get("function_call") if isinstance(message, dict) else None
    if isinstance(legacy, dict) and legacy.get("name"):
        return [
            ToolCall(
                id="call_0",
                name=str(legacy["name"]),
                arguments=parse_tool_call_arguments(legacy.get("arguments")),
            )
        ]
    return []


def _normalize_usage(usage: Any) -> dict[str, int]:
    if not isinstance(usage, dict):
        return {}
    prompt = usage.get("prompt_tokens", usage.get("input_tokens"))
    completion = usage.get("completion_tokens", usage.get("output_tokens"))
    result: dict[str, int] = {}
    if isinstance(prompt, int):
        result["prompt_tokens"] = prompt
    if isinstance(completion, int):
        result["completion_tokens"] = completion
    total = usage.get("total_tokens")
    if isinstance(total, int):
        result["total_tokens"] = total
    elif result:
        result["total_tokens"] = result.get("prompt_tokens", 0) + result.get("completion_tokens", 0)
    return result


class OpenRouterProvider(LLMProvider):
    """Chat completions against OpenRouter (or any OpenAI-compatible endpoint)."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        app_title: str = "Parley",
        referer: str = "http://localhost:3000",
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            api_key: API key; falls back to OPENROUTER_API_KEY
            base_url: API base URL
            timeout: Timeout for non-streaming requests (streams are unbounded)
            app_title: Sent as X-Title for attribution
            referer: Sent as HTTP-Referer for attribution
            client: Optional preconfigured httpx client (tests)
        """
        self.api_key = (api_key or os.environ.get("OPENROUTER_API_KEY", "")).strip()
        self.base_url = (base_url or OPENROUTER_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.app_title = app_title
        self.referer = referer
        self.client = client or httpx.AsyncClient(follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise UnauthorizedError("Missing provider API key")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.app_title,
        }

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to the OpenAI wire format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                entry: dict[str, Any] = {
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content or "",
                }
                if msg.tool_name:
                    entry["name"] = msg.tool_name
                result.append(entry)
                continue

            if msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in msg.tool_calls
                    ],
                })
                continue

            images = [a for a in msg.attachments if a.get("kind") == "image" and a.get("data_url")]
            if msg.role == "user" and images:
                blocks: list[dict[str, Any]] = [{"type": "text", "text": msg.content or ""}]
                for image in images:
                    blocks.append({"type": "image_url", "image_url": {"url": image["data_url"]}})
                result.append({"role": "user", "content": blocks})
                continue

            result.append({"role": msg.role, "content": msg.content or ""})
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _build_body(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        tool_choice: str | None,
        params: GenerationParams | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(messages),
            "stream": stream,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
            if tool_choice:
                body["tool_choice"] = tool_choice
        if params is not None:
            if params.temperature is not None:
                body["temperature"] = params.temperature
            if params.top_p is not None:
                body["top_p"] = params.top_p
            if params.max_tokens is not None:
                body["max_tokens"] = params.max_tokens
            if params.reasoning_effort and params.reasoning_effort != "none":
                body["reasoning"] = {"effort": params.reasoning_effort}
            if params.modalities:
                body["modalities"] = list(params.modalities)
        if stream:
            body["usage"] = {"include": True}
        return body

    async def complete(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        params: GenerationParams | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(model, messages, tools, tool_choice, params, stream=False)
        headers = self._headers()

        try:
            log.debug("Calling provider", model=model, msg_count=len(messages), tools=bool(tools))
            response = await self.client.post(url, json=body, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Provider HTTP error: {e}")

        if not response.is_success:
            raise classify_status(
                response.status_code,
                f"Provider API error {response.status_code}: {response.text}",
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Provider response decode error: {e}")

        choices = data.get("choices") or []
        message = (choices[0] or {}).get("message", {}) if choices else {}
        content = message.get("content")
        if isinstance(content, list):
            content = "".join(
                str(block.get("text", "")) for block in content if isinstance(block, dict)
            )

        return LLMResponse(
            content=content or "",
            tool_calls=normalize_tool_calls(message),
            model=str(data.get("model") or model),
            usage=_normalize_usage(data.get("usage")),
        )

    async def stream(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        params: GenerationParams | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as text / reasoning / image / usage events."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(model, messages, tools, None, params, stream=True)
        headers = self._headers()

        try:
            async with self.client.stream("POST", url, json=body, headers=headers, timeout=None) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise classify_status(
                        response.status_code,
                        f"Provider API error {response.status_code}: {error_text}",
                    )

                async for line in response.aiter_lines():
                    stripped = line.strip()
                    if not stripped.startswith("data:"):
                        continue
                    data = stripped[5:].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    for event in self._parse_chunk(data):
                        yield event
        except httpx.HTTPError as e:
            raise StreamTransportError(f"Provider streaming error: {e}")

    @staticmethod
    def _parse_chunk(data: str) -> list[StreamEvent]:
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError as e:
            raise StreamTransportError(f"Malformed stream chunk: {e}")
        if not isinstance(chunk, dict):
            return []
        if isinstance(chunk.get("error"), dict):
            err = chunk["error"]
            code = err.get("code")
            message = str(err.get("message") or "stream error")
            if isinstance(code, int):
                raise classify_status(code, message)
            raise StreamTransportError(message)

        events: list[StreamEvent] = []
        for choice in chunk.get("choices") or []:
            delta = (choice or {}).get("delta") or {}
            reasoning = delta.get("reasoning") or delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                events.append(StreamEvent(kind="reasoning", data=reasoning))
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(StreamEvent(kind="text", data=content))
            for image in delta.get("images") or []:
                url = ((image or {}).get("image_url") or {}).get("url")
                if isinstance(url, str) and url:
                    events.append(StreamEvent(kind="image", data=url))
        usage = _normalize_usage(chunk.get("usage"))
        if usage:
            events.append(StreamEvent(kind="usage", usage=usage))
        return events

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
