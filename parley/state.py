"""Shared UI state container updated by merge-style patches.

Everything runs on one event loop, so a read-merge-write with no ``await`` in
between is atomic with respect to other sessions. Writers always merge into
the latest snapshot and never replace a whole section.
"""

import copy
from typing import Any, Callable

from parley.logging import get_logger

log = get_logger(__name__)

NOTICE = "notice"
IS_STREAMING = "is_streaming"
SEARCH_SECTION = "search_by_message_id"
TUTOR_SECTION = "tutor_by_message_id"
COMPARE_SECTION = "compare_runs"

StateListener = Callable[[dict[str, Any]], None]


class StateStore:
    """Merge-only key/value state shared by the orchestrator and tools."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._state: dict[str, Any] = {
            NOTICE: None,
            IS_STREAMING: False,
            SEARCH_SECTION: {},
            TUTOR_SECTION: {},
            COMPARE_SECTION: {},
        }
        if initial:
            self._state.update(initial)
        self._listeners: list[StateListener] = []

    def get_state(self) -> dict[str, Any]:
        """Return a deep copy of the current state."""
        return copy.deepcopy(self._state)

    def get(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(patch)`` after every update; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_state(self, patch: dict[str, Any]) -> None:
        """Apply ``patch`` to the top-level keys it names; other keys are untouched."""
        if not patch:
            return
        self._state.update(patch)
        self._notify(patch)

    def get_message_state(self, section: str, message_id: str) -> dict[str, Any]:
        entries = self._state.get(section) or {}
        return copy.deepcopy(entries.get(message_id) or {})

    def merge_message_state(self, section: str, message_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Merge ``patch`` into the entry for ``message_id`` under ``section``.

        Reads the latest snapshot immediately before writing, so tool calls that
        target the same message accumulate rather than overwrite each other.

        Returns:
            The merged entry
        """
        entries = dict(self._state.get(section) or {})
        merged = {**(entries.get(message_id) or {}), **patch}
        entries[message_id] = merged
        self._state[section] = entries
        self._notify({section: {message_id: merged}})
        return copy.deepcopy(merged)

    def set_notice(self, notice: str | None) -> None:
        self.set_state({NOTICE: notice})

    def _notify(self, patch: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(patch)
            except Exception as e:
                log.warning("State listener failed", error=str(e))
