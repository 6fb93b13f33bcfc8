"""Tests for graph traversal: cycles, branches, loops, fan-out and failures."""

import asyncio

import pytest

from conftest import make_flow

from flowrunner.services.execution.context import ExecutionContext
from flowrunner.services.execution.exceptions import NodeExecutionError
from flowrunner.services.execution.handlers import NodeResult
from flowrunner.services.execution.walker import GraphWalker, wait_any


def task(node_id, next_ids=()):
    return {"id": node_id, "type": "transform", "config": {"script": "1"}, "next": list(next_ids)}


class FakeRunNode:
    """Records node ids; fails the ones listed in ``failing``."""

    def __init__(self, failing=(), yield_between=False):
        self.failing = set(failing)
        self.yield_between = yield_between
        self.calls = []

    async def __call__(self, node, variables):
        self.calls.append(node.id)
        if self.yield_between:
            await asyncio.sleep(0)
        if node.id in self.failing:
            raise NodeExecutionError(node.id, "boom", attempts=2)
        return NodeResult(data={"ran": node.id}, variables={f"{node.id}_done": True})


def make_walker(flow, run_node, variables=None, **kwargs):
    context = ExecutionContext.create(flow.id, variables, echo=False)
    return GraphWalker(flow, context, run_node=run_node, **kwargs), context


def output_ids(context):
    return [output["nodeId"] for output in context.outputs]


async def test_linear_chain_runs_in_order():
    flow = make_flow([task("a", ["b"]), task("b", ["c"]), task("c")])
    run_node = FakeRunNode()
    walker, context = make_walker(flow, run_node)

    await walker.execute()

    assert run_node.calls == ["a", "b", "c"]
    assert output_ids(context) == ["a", "b", "c"]
    assert context.variables == {"a_done": True, "b_done": True, "c_done": True}


async def test_cycle_terminates_with_each_node_once():
    flow = make_flow([task("a", ["b"]), task("b", ["a"])])
    run_node = FakeRunNode()
    walker, _ = make_walker(flow, run_node)

    await walker.execute()

    assert run_node.calls == ["a", "b"]


async def test_branch_selects_one_successor():
    flow = make_flow([
        {"id": "a", "type": "branch",
         "config": {"condition": "variables.x > 40", "trueNodeId": "high", "falseNodeId": "low"}},
        task("high"),
        task("low"),
    ])
    run_node = FakeRunNode()
    walker, context = make_walker(flow, run_node, variables={"x": 42})

    await walker.execute()

    assert run_node.calls == ["high"]
    assert "low" not in output_ids(context)
    assert context.outputs[0]["result"] == {"condition": True, "nextNodeId": "high"}


async def test_branch_condition_error_is_recorded():
    flow = make_flow([
        {"id": "a", "type": "branch",
         "config": {"condition": "undefined_name > 1", "trueNodeId": "b", "falseNodeId": "b"}},
        task("b"),
    ])
    run_node = FakeRunNode()
    walker, context = make_walker(flow, run_node)

    await walker.execute()

    assert run_node.calls == []
    assert context.outputs[0]["nodeId"] == "a"
    assert "error" in context.outputs[0]


async def test_loop_runs_body_until_condition_fails():
    counter_calls = []

    async def run_node(node, variables):
        counter_calls.append(node.id)
        return NodeResult(data=variables["count"], variables={"count": variables["count"] + 1})

    flow = make_flow([
        {"id": "a", "type": "loop", "config": {"condition": "count < 5", "bodyNodeId": "body"}, "next": ["done"]},
        task("body"),
        task("done"),
    ])
    walker, context = make_walker(flow, run_node, variables={"count": 0})

    await walker.execute()

    assert counter_calls == ["body"] * 5 + ["done"]
    assert context.variables["count"] == 6
    assert context.variables["loop_iterations"] == 5
    loop_output = next(o for o in context.outputs if o["nodeId"] == "a")
    assert loop_output["result"] == {"iterations": 5, "capped": False}


async def test_loop_is_capped_by_max_iterations():
    flow = make_flow([
        {"id": "a", "type": "loop", "config": {"condition": "true", "bodyNodeId": "body", "maxIterations": 3}},
        task("body"),
    ])
    run_node = FakeRunNode()
    walker, context = make_walker(flow, run_node)

    await walker.execute()

    assert run_node.calls == ["body"] * 3
    assert context.outputs[-1]["result"] == {"iterations": 3, "capped": True}


async def test_loop_uses_engine_default_cap():
    flow = make_flow([
        {"id": "a", "type": "loop", "config": {"condition": "true", "bodyNodeId": "body"}},
        task("body"),
    ])
    run_node = FakeRunNode()
    walker, _ = make_walker(flow, run_node, max_iterations=7)

    await walker.execute()

    assert len(run_node.calls) == 7


async def test_loop_condition_sees_iteration_counter():
    flow = make_flow([
        {"id": "a", "type": "loop", "config": {"condition": "iteration < 2", "bodyNodeId": "body"}},
        task("body"),
    ])
    run_node = FakeRunNode()
    walker, context = make_walker(flow, run_node)

    await walker.execute()

    assert run_node.calls == ["body", "body"]
    assert "iteration" not in context.variables


async def test_simple_language_conditions():
    flow = make_flow([
        {"id": "a", "type": "loop",
         "config": {"condition": "iteration < 2", "language": "simple", "bodyNodeId": "body"}, "next": ["check"]},
        task("body"),
        {"id": "check", "type": "branch",
         "config": {"condition": "status == 'ok'", "language": "simple", "trueNodeId": "yes", "falseNodeId": "no"}},
        task("yes"),
        task("no"),
    ])
    run_node = FakeRunNode()
    walker, context = make_walker(flow, run_node, variables={"status": "ok"})

    await walker.execute()

    assert run_node.calls == ["body", "body", "yes"]
    assert context.variables["loop_iterations"] == 2


async def test_fan_out_joins_and_runs_shared_successor_once():
    flow = make_flow([
        task("a", ["b", "c"]),
        task("b", ["d"]),
        task("c", ["d"]),
        task("d"),
    ])
    run_node = FakeRunNode(yield_between=True)
    walker, context = make_walker(flow, run_node)

    await walker.execute()

    assert sorted(run_node.calls) == ["a", "b", "c", "d"]
    assert run_node.calls.count("d") == 1
    assert run_node.calls[0] == "a"


async def test_failed_node_does_not_stop_the_walk():
    flow = make_flow([task("a", ["b"]), task("b")])
    run_node = FakeRunNode(failing={"a"})
    walker, context = make_walker(flow, run_node)

    await walker.execute()

    assert run_node.calls == ["a", "b"]
    assert context.outputs[0] == {
        "nodeId": "a",
        "type": "transform",
        "error": "boom",
        "timestamp": context.outputs[0]["timestamp"],
    }
    assert any(log["message"] == "Node 'a' failed after 2 attempt(s): boom" for log in context.logs)


async def test_abort_on_failure_raises():
    flow = make_flow([task("a", ["b"]), task("b")])
    run_node = FakeRunNode(failing={"a"})
    walker, _ = make_walker(flow, run_node, abort_on_failure=True)

    with pytest.raises(NodeExecutionError):
        await walker.execute()
    assert run_node.calls == ["a"]


async def test_fan_out_abort_cancels_siblings():
    started = []

    async def run_node(node, variables):
        started.append(node.id)
        if node.id == "b":
            raise NodeExecutionError("b", "boom")
        await asyncio.sleep(10)
        return NodeResult()

    flow = make_flow([task("a", ["b", "c"]), task("b"), task("c")])
    walker, _ = make_walker(flow, run_node, abort_on_failure=True)

    with pytest.raises(NodeExecutionError):
        await asyncio.wait_for(walker._fan_out(["b", "c"]), timeout=5)
    assert set(started) == {"b", "c"}


async def test_fan_out_raises_first_failure_in_next_order():
    waits = []

    async def recording_wait(tasks):
        waits.append(len(tasks))
        await wait_any(tasks)

    flow = make_flow([task("a", ["c", "b"]), task("b"), task("c")])
    walker, _ = make_walker(flow, FakeRunNode(failing={"b", "c"}), abort_on_failure=True,
                            wait_any_fn=recording_wait)

    with pytest.raises(NodeExecutionError) as exc_info:
        await walker.execute()

    assert exc_info.value.node_id == "c"
    assert waits and all(count == 2 for count in waits)


async def test_missing_successor_is_skipped_with_warning():
    flow = make_flow([task("a", ["ghost"])])
    walker, context = make_walker(flow, FakeRunNode())

    await walker.execute()

    assert {"level": "warn", "message": "Node 'ghost' not found, skipping"}.items() <= context.logs[-1].items()


async def test_checkpoint_can_stop_the_walk():
    allowed = iter([True, False])

    async def checkpoint():
        return next(allowed)

    flow = make_flow([task("a", ["b"]), task("b")])
    run_node = FakeRunNode()
    walker, _ = make_walker(flow, run_node, checkpoint=checkpoint)

    await walker.execute()

    assert run_node.calls == ["a"]
    assert walker.stopped


async def test_progress_hooks():
    started, processed = [], []
    flow = make_flow([task("a", ["b"]), task("b")])
    walker, _ = make_walker(flow, FakeRunNode(failing={"b"}),
                            on_node_started=started.append, on_node_processed=processed.append)

    await walker.execute()

    assert started == ["a", "b"]
    assert processed == ["a", "b"]
