import asyncio

import pytest

from parley.abort import AbortController, AbortGraph, ControllerRegistry, run_abortable
from parley.exceptions import TurnAborted


def test_master_abort_reaches_every_child_synchronously():
    graph = AbortGraph()
    first = graph.child("model-a")
    second = graph.child("model-b")

    graph.abort("stop")

    assert first.aborted and second.aborted
    assert first.signal.reason == "stop"


def test_child_abort_leaves_master_and_siblings_running():
    graph = AbortGraph()
    first = graph.child("model-a")
    second = graph.child("model-b")

    assert graph.abort_child("model-a") is True
    assert first.aborted
    assert not second.aborted
    assert not graph.aborted
    assert graph.abort_child("missing") is False


def test_release_detaches_child_listener_from_master():
    graph = AbortGraph()
    graph.child("model-a")
    graph.child("model-b")
    assert graph.master.signal.listener_count == 2

    graph.release("model-a")
    assert graph.master.signal.listener_count == 1
    assert graph.active_keys() == ["model-b"]

    graph.dispose()
    assert graph.master.signal.listener_count == 0


def test_listener_added_after_abort_fires_immediately():
    controller = AbortController()
    controller.abort("late")
    seen = []

    controller.signal.add_listener(seen.append)

    assert seen == ["late"]


def test_failing_listener_does_not_block_others():
    controller = AbortController()
    seen = []

    def _boom(_reason):
        raise RuntimeError("listener failure")

    controller.signal.add_listener(_boom)
    controller.signal.add_listener(seen.append)
    controller.abort("x")

    assert seen == ["x"]


@pytest.mark.asyncio
async def test_run_abortable_cancels_inner_work_on_abort():
    controller = AbortController()
    cancelled = asyncio.Event()

    async def _work():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    asyncio.get_running_loop().call_later(0.01, controller.abort)
    with pytest.raises(TurnAborted):
        await run_abortable(_work(), controller.signal)

    assert cancelled.is_set()
    assert controller.signal.listener_count == 0


@pytest.mark.asyncio
async def test_run_abortable_rejects_already_aborted_signal():
    controller = AbortController()
    controller.abort()

    with pytest.raises(TurnAborted):
        await run_abortable(asyncio.sleep(1), controller.signal)


@pytest.mark.asyncio
async def test_run_abortable_returns_value_and_removes_listener():
    controller = AbortController()

    async def _work():
        await asyncio.sleep(0)
        return 42

    assert await run_abortable(_work(), controller.signal) == 42
    assert controller.signal.listener_count == 0


@pytest.mark.asyncio
async def test_outer_cancellation_is_not_reported_as_abort():
    controller = AbortController()
    task = asyncio.create_task(run_abortable(asyncio.sleep(10), controller.signal))
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not controller.aborted


@pytest.mark.asyncio
async def test_signal_wait_returns_reason():
    controller = AbortController()
    asyncio.get_running_loop().call_later(0.01, controller.abort, "done")

    assert await controller.signal.wait() == "done"


def test_registry_start_supersedes_previous_graph():
    registry = ControllerRegistry()
    first = registry.start("chat-1")
    child = first.child("model-a")

    second = registry.start("chat-1")

    assert first.aborted
    assert child.signal.reason == "superseded"
    assert registry.get("chat-1") is second
    assert not second.aborted


def test_registry_clear_ignores_stale_graph():
    registry = ControllerRegistry()
    stale = registry.start("chat-1")
    current = registry.start("chat-1")

    registry.clear("chat-1", stale)
    assert registry.get("chat-1") is current

    registry.clear("chat-1", current)
    assert "chat-1" not in registry


def test_registry_abort_and_abort_all():
    registry = ControllerRegistry()
    first = registry.start("chat-1")
    second = registry.start("compare:chat-1")

    assert registry.abort("chat-1") is True
    assert first.aborted
    assert registry.abort("chat-1") is False

    registry.abort_all()
    assert second.aborted
    assert "compare:chat-1" not in registry
