"""Tests for GoalFetcher: interactive and plain protocol paths."""

import asyncio

import pytest

from conftest import FakeBackend, goal_payload, wait_until
from infoview_mcp.goal_fetcher import GoalFetcher
from infoview_mcp.info_types import InfoStatus
from infoview_mcp.rpc import METHOD_NOT_FOUND, RpcError


async def test_interactive_fetch(backend, pos):
    backend.queue("get_term_goal", goal_payload("Nat", {"x": "Nat"}))
    backend.queue("get_widgets", {"widgets": [{"id": "Lean.Widget.demo", "javascriptHash": "42", "props": {"a": 1}}]})

    result = await GoalFetcher(backend).fetch(pos)

    assert result.status == InfoStatus.READY
    assert result.error is None
    assert [g.type for g in result.goals] == ["p 2 4"]
    assert result.goals[0].hyps[0].names == ("n",)
    assert result.term_goal.type == "Nat"
    assert result.widgets[0].id == "Lean.Widget.demo"
    assert result.widgets[0].javascript_hash == "42"
    assert {m for m, _ in backend.calls} == {"get_goals", "get_term_goal", "get_widgets"}
    assert all(p == pos for _, p in backend.calls)


async def test_all_requests_started_before_any_awaited(backend, pos):
    held = asyncio.get_running_loop().create_future()
    backend.queue("get_goals", held)

    task = asyncio.create_task(GoalFetcher(backend).fetch(pos))
    await wait_until(lambda: len(backend.calls) == 3)
    assert not task.done()

    held.set_result({"goals": []})
    result = await task
    assert result.goals == ()


async def test_goal_failure_propagates(backend, pos):
    backend.queue("get_goals", RpcError(-32603, "elaboration failed"))
    backend.queue("get_term_goal", RpcError(-32603, "also failed"))

    with pytest.raises(RpcError, match="elaboration failed"):
        await GoalFetcher(backend).fetch(pos)


async def test_widgets_method_not_found_means_no_widgets(backend, pos):
    backend.queue("get_widgets", RpcError(METHOD_NOT_FOUND, "No RPC method 'Lean.Widget.getWidgets' found"))

    result = await GoalFetcher(backend).fetch(pos)

    assert result.status == InfoStatus.READY
    assert result.widgets == ()
    assert result.goals is not None


async def test_other_widget_failure_propagates(backend, pos):
    backend.queue("get_widgets", RpcError(-32603, "widget panic"))

    with pytest.raises(RpcError, match="widget panic"):
        await GoalFetcher(backend).fetch(pos)


async def test_plain_fetch(pos):
    backend = FakeBackend(widgets_v1=False)
    backend.queue("get_plain_term_goal", {"goal": "⊢ Nat", "range": None})

    result = await GoalFetcher(backend).fetch(pos)

    assert result.status == InfoStatus.READY
    assert result.goals[0].type == "p 2 4"
    assert result.goals[0].hyps[0].type == "Nat"
    assert result.term_goal.type == "Nat"
    assert result.widgets is None
    assert {m for m, _ in backend.calls} == {"get_plain_goal", "get_plain_term_goal"}


async def test_plain_term_goal_failure_tolerated(pos):
    backend = FakeBackend(widgets_v1=False)
    backend.queue("get_plain_term_goal", RpcError(METHOD_NOT_FOUND, "unknown request"))

    result = await GoalFetcher(backend).fetch(pos)

    assert result.status == InfoStatus.READY
    assert result.term_goal is None
    assert result.goals


async def test_plain_no_goals(pos):
    backend = FakeBackend(widgets_v1=False)
    backend.queue("get_plain_goal", None)

    result = await GoalFetcher(backend).fetch(pos)
    assert result.goals is None
    assert result.term_goal is None


async def test_capability_checked_once(backend, pos):
    fetcher = GoalFetcher(backend)
    await fetcher.fetch(pos)
    await fetcher.fetch(pos)
    assert backend.version_checks == 1
