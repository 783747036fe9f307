"""Parley - multi-model chat turns with tool planning, streaming and cancellation."""

__version__ = "0.1.0"

from parley.config import Config
from parley.models import Chat, ChatMessage, ChatSettings
from parley.orchestrator import TurnOrchestrator, TurnResult

__all__ = [
    "Chat",
    "ChatMessage",
    "ChatSettings",
    "Config",
    "TurnOrchestrator",
    "TurnResult",
    "__version__",
]
