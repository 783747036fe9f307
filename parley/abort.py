"""Cancellation primitives: abort signals, controllers and the per-turn abort graph.

A turn owns one :class:`AbortGraph`. The graph's master controller covers the
whole send (or compare run); each participating model gets a child controller
whose signal follows the master. Listeners run synchronously inside
``abort()`` so that cancelling the master stops every child within the same
tick of the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar

from parley.exceptions import TurnAborted
from parley.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

AbortListener = Callable[[Any], None]


class AbortSignal:
    """Read-only view of a controller's abort state."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: list[AbortListener] = []
        self._event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: AbortListener) -> None:
        """Register a callback fired once with the abort reason.

        Registering on an already-aborted signal fires immediately.
        """
        if self._aborted:
            listener(self._reason)
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: AbortListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def wait(self) -> Any:
        """Wait until the signal is aborted and return the reason."""
        if self._aborted:
            return self._reason
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
        return self._reason

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise TurnAborted(str(self._reason) if self._reason is not None else None)

    def _fire(self, reason: Any) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(reason)
            except Exception as e:
                log.warning("Abort listener failed", error=str(e))
        if self._event is not None:
            self._event.set()


class AbortController:
    """Owner side of an :class:`AbortSignal`."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    @property
    def aborted(self) -> bool:
        return self.signal.aborted

    def abort(self, reason: Any = "aborted") -> None:
        self.signal._fire(reason)


class _ChildLink:
    """Child controller plus the forwarding listener registered on its parent."""

    def __init__(self, parent: AbortSignal):
        self.parent = parent
        self.controller = AbortController()
        self._forward = self.controller.abort
        parent.add_listener(self._forward)

    def detach(self) -> None:
        self.parent.remove_listener(self._forward)


class AbortGraph:
    """One master controller plus one child controller per model session."""

    def __init__(self, master: AbortController | None = None):
        self.master = master or AbortController()
        self._children: dict[str, _ChildLink] = {}

    @property
    def aborted(self) -> bool:
        return self.master.aborted

    def child(self, key: str) -> AbortController:
        """Create (or return) the child controller for ``key``."""
        link = self._children.get(key)
        if link is None:
            link = _ChildLink(self.master.signal)
            self._children[key] = link
        return link.controller

    def release(self, key: str) -> None:
        """Detach a finished child so the master no longer holds its listener."""
        link = self._children.pop(key, None)
        if link is not None:
            link.detach()

    def abort(self, reason: Any = "aborted") -> None:
        """Abort the master and, through it, every child."""
        self.master.abort(reason)

    def abort_child(self, key: str, reason: Any = "aborted") -> bool:
        link = self._children.get(key)
        if link is None:
            return False
        link.controller.abort(reason)
        return True

    def active_keys(self) -> list[str]:
        return list(self._children)

    def dispose(self) -> None:
        for key in list(self._children):
            self.release(key)


async def run_abortable(awaitable: Awaitable[T], signal: AbortSignal) -> T:
    """Await ``awaitable`` in its own task and cancel that task when ``signal`` aborts.

    Raises:
        TurnAborted: if the signal fired before or during the call
    """
    if signal.aborted:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        signal.raise_if_aborted()
    task: asyncio.Task[T] = asyncio.ensure_future(awaitable)

    def _cancel(_reason: Any) -> None:
        task.cancel()

    signal.add_listener(_cancel)
    try:
        return await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if signal.aborted and task.cancelled() and not (current and current.cancelling()):
            raise TurnAborted(str(signal.reason) if signal.reason is not None else None) from None
        raise
    finally:
        signal.remove_listener(_cancel)


class ControllerRegistry:
    """Tracks the live abort graph of each chat and of each compare run."""

    def __init__(self) -> None:
        self._turns: dict[str, AbortGraph] = {}

    def start(self, key: str) -> AbortGraph:
        """Register a fresh graph for ``key``, aborting any graph it replaces."""
        existing = self._turns.get(key)
        if existing is not None:
            existing.abort("superseded")
            existing.dispose()
        graph = AbortGraph()
        self._turns[key] = graph
        return graph

    def get(self, key: str) -> AbortGraph | None:
        return self._turns.get(key)

    def clear(self, key: str, graph: AbortGraph | None = None) -> None:
        """Forget ``key``; when ``graph`` is given, only if it is still the current one."""
        current = self._turns.get(key)
        if current is None:
            return
        if graph is not None and current is not graph:
            return
        current.dispose()
        del self._turns[key]

    def abort(self, key: str) -> bool:
        graph = self._turns.pop(key, None)
        if graph is None:
            return False
        graph.abort()
        graph.dispose()
        return True

    def abort_all(self) -> None:
        for key in list(self._turns):
            self.abort(key)

    def __contains__(self, key: str) -> bool:
        return key in self._turns
