"""Timing and token metrics for streamed generations."""

import time
from dataclasses import asdict, dataclass
from typing import Any


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.perf_counter() * 1000.0


@dataclass(frozen=True)
class StreamMetrics:
    """Metrics attached to a finished assistant message."""

    ttft_ms: int | None
    completion_ms: int
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    tokens_per_sec: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _usage_value(usage: dict[str, Any] | None, *keys: str) -> int | None:
    if not usage:
        return None
    for key in keys:
        value = usage.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
    return None


def compute_metrics(
    started_at: float,
    first_token_at: float | None = None,
    finished_at: float | None = None,
    usage: dict[str, Any] | None = None,
) -> StreamMetrics:
    """Derive stream metrics from millisecond timestamps and provider usage.

    ``ttft_ms`` is clamped into ``[0, completion_ms]`` and ``tokens_per_sec`` is
    left as ``None`` whenever the completion token count or the duration is
    zero or unknown.
    """
    end = finished_at if finished_at is not None else now_ms()
    completion_ms = max(0, round(end - started_at))
    ttft_ms: int | None = None
    if first_token_at is not None:
        ttft_ms = min(max(0, round(first_token_at - started_at)), completion_ms)

    prompt_tokens = _usage_value(usage, "prompt_tokens", "input_tokens")
    completion_tokens = _usage_value(usage, "completion_tokens", "output_tokens")
    tokens_per_sec: float | None = None
    if completion_tokens and completion_ms:
        tokens_per_sec = round(completion_tokens / (completion_ms / 1000.0), 2)

    return StreamMetrics(
        ttft_ms=ttft_ms,
        completion_ms=completion_ms,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        tokens_per_sec=tokens_per_sec,
    )
