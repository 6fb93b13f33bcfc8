"""Tests for the durable execution state machine and Temporal helpers."""

from datetime import timedelta

from temporalio.client import WorkflowExecutionStatus

from flowrunner.models.flow import RetryPolicy
from flowrunner.services.execution.context import ExecutionContext
from flowrunner.services.temporal.client import map_status
from flowrunner.services.temporal.state import DurableExecutionState, DurableStatus
from flowrunner.services.temporal.workflow import build_activity_retry_policy


def make_state(total_nodes=4, variables=None):
    context = ExecutionContext.create("flow-1", variables, echo=False)
    return DurableExecutionState(context=context, total_nodes=total_nodes)


class TestTransitions:

    def test_pause_and_resume(self):
        state = make_state()
        assert state.pause()
        assert state.status == DurableStatus.PAUSED
        assert not state.pause()
        assert state.resume()
        assert state.is_running

    def test_resume_requires_paused(self):
        assert not make_state().resume()

    def test_cancel_from_paused(self):
        state = make_state()
        state.pause()
        assert state.cancel()
        assert state.status == DurableStatus.CANCELLED

    def test_terminal_states_are_final(self):
        state = make_state()
        state.complete()
        assert state.is_terminal
        assert not state.cancel()
        assert not state.pause()
        assert not state.fail("late")
        assert not state.update_variables({"x": 1})
        assert state.status == DurableStatus.COMPLETED
        assert state.error is None

    def test_fail_records_error(self):
        state = make_state()
        assert state.fail("node b exploded")
        assert state.status == DurableStatus.FAILED
        assert state.error == "node b exploded"
        assert state.logs[-1]["message"] == "Workflow failed: node b exploded"


class TestVariablesAndProgress:

    def test_update_variables_merges(self):
        state = make_state(variables={"a": 1, "b": 2})
        assert state.update_variables({"b": 3, "c": 4})
        assert state.variables == {"a": 1, "b": 3, "c": 4}
        assert state.logs[-1]["message"] == "Variables updated: b, c"

    def test_empty_patch_is_ignored(self):
        assert not make_state().update_variables({})

    def test_progress(self):
        state = make_state(total_nodes=4)
        assert state.progress == 0
        state.node_processed("a")
        state.node_processed("a")
        assert state.progress == 25
        for node_id in ("b", "c", "d"):
            state.node_processed(node_id)
        assert state.progress == 100

    def test_progress_of_empty_flow(self):
        state = make_state(total_nodes=0)
        assert state.progress == 0
        state.complete()
        assert state.progress == 100

    def test_snapshot(self):
        state = make_state(variables={"x": 1})
        state.node_started("a")
        snapshot = state.snapshot()
        assert snapshot["status"] == "running"
        assert snapshot["currentNodeId"] == "a"
        assert snapshot["variables"] == {"x": 1}
        assert snapshot["progress"] == 0


class TestTemporalHelpers:

    def test_activity_retry_policy(self):
        policy = build_activity_retry_policy(RetryPolicy(max_attempts=3, backoff_ms=250, jitter=True))
        assert policy.maximum_attempts == 3
        assert policy.initial_interval == timedelta(milliseconds=250)
        assert policy.backoff_coefficient == 2.0

    def test_default_activity_retry_policy_is_single_attempt(self):
        policy = build_activity_retry_policy(None)
        assert policy.maximum_attempts == 1
        assert policy.initial_interval == timedelta(milliseconds=1)

    def test_map_status(self):
        assert map_status(WorkflowExecutionStatus.COMPLETED) == "completed"
        assert map_status(WorkflowExecutionStatus.CANCELED) == "cancelled"
        assert map_status(WorkflowExecutionStatus.TIMED_OUT) == "timed_out"
        assert map_status(None) == "unknown"
