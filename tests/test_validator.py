"""Tests for structural flow validation."""

from conftest import make_flow

from flowrunner.services.execution.validator import (
    CYCLE_WARNING,
    find_reachable_nodes,
    has_cycles,
    validate_flow,
)


def transform(node_id, next_ids=(), script="1"):
    return {"id": node_id, "type": "transform", "config": {"script": script}, "next": list(next_ids)}


class TestStructure:

    def test_linear_flow_is_valid(self):
        flow = make_flow([transform("a", ["b"]), transform("b")])
        report = validate_flow(flow)
        assert report.is_valid
        assert report.errors == []
        assert report.warnings == []

    def test_missing_entry(self):
        report = validate_flow(make_flow([transform("a")], entry="start"))
        assert not report.is_valid
        assert "Entry node 'start' not found in nodes" in report.errors

    def test_duplicate_node_ids(self):
        report = validate_flow(make_flow([transform("a"), transform("a")]))
        assert "Duplicate node ID: a" in report.errors

    def test_dangling_next_reference(self):
        report = validate_flow(make_flow([transform("a", ["ghost"])]))
        assert "Node 'a' references non-existent node 'ghost'" in report.errors

    def test_unreachable_nodes_are_a_warning(self):
        report = validate_flow(make_flow([transform("a"), transform("b"), transform("c")]))
        assert report.is_valid
        assert "Unreachable nodes: b, c" in report.warnings

    def test_branch_targets_count_as_reachable(self):
        flow = make_flow([
            {"id": "a", "type": "branch",
             "config": {"condition": "x > 1", "trueNodeId": "yes", "falseNodeId": "no"}},
            transform("yes"),
            transform("no"),
        ])
        report = validate_flow(flow)
        assert report.is_valid
        assert report.warnings == []
        assert find_reachable_nodes(flow) == {"a", "yes", "no"}


class TestCycles:

    def test_cycle_is_a_warning_by_default(self):
        flow = make_flow([transform("a", ["b"]), transform("b", ["a"])])
        assert has_cycles(flow)
        report = validate_flow(flow)
        assert report.is_valid
        assert CYCLE_WARNING in report.warnings

    def test_cycle_rejected_when_configured(self):
        flow = make_flow([transform("a", ["b"]), transform("b", ["a"])])
        report = validate_flow(flow, reject_cycles=True)
        assert not report.is_valid
        assert "Flow contains cycles" in report.errors

    def test_diamond_is_not_a_cycle(self):
        flow = make_flow([
            transform("a", ["b", "c"]),
            transform("b", ["d"]),
            transform("c", ["d"]),
            transform("d"),
        ])
        assert not has_cycles(flow)

    def test_self_loop(self):
        assert has_cycles(make_flow([transform("a", ["a"])]))


class TestNodeConfig:

    def test_http_missing_url_and_method(self):
        report = validate_flow(make_flow([{"id": "a", "type": "http", "config": {}}]))
        assert "HTTP node 'a' missing URL" in report.errors
        assert "HTTP node 'a' missing method, defaulting to GET" in report.warnings

    def test_branch_missing_condition_and_targets(self):
        report = validate_flow(make_flow([{"id": "a", "type": "branch", "config": {}}]))
        assert "Branch node 'a' missing condition" in report.errors
        assert "Branch node 'a' missing true/false node references" in report.errors

    def test_branch_target_must_exist(self):
        report = validate_flow(make_flow([
            {"id": "a", "type": "branch",
             "config": {"condition": "true", "trueNodeId": "b", "falseNodeId": "ghost"}},
            transform("b"),
        ]))
        assert "Branch node 'a' references non-existent node 'ghost'" in report.errors

    def test_delay_duration_must_be_positive_number(self):
        for duration in (0, -5, "10", None):
            report = validate_flow(make_flow([{"id": "a", "type": "delay", "config": {"duration": duration}}]))
            assert "Delay node 'a' missing or invalid duration" in report.errors

    def test_transform_missing_script(self):
        report = validate_flow(make_flow([{"id": "a", "type": "transform", "config": {}}]))
        assert "Transform node 'a' missing script" in report.errors

    def test_loop_body_must_be_a_task_node(self):
        report = validate_flow(make_flow([
            {"id": "a", "type": "loop", "config": {"condition": "true", "bodyNodeId": "b"}},
            {"id": "b", "type": "branch",
             "config": {"condition": "true", "trueNodeId": "a", "falseNodeId": "a"}},
        ]))
        assert "Loop node 'a' body must not be a branch or loop node" in report.errors

    def test_loop_missing_body(self):
        report = validate_flow(make_flow([{"id": "a", "type": "loop", "config": {"condition": "true"}}]))
        assert "Loop node 'a' missing body node reference" in report.errors

    def test_call_and_webhook_targets(self):
        report = validate_flow(make_flow([
            {"id": "a", "type": "call", "config": {}, "next": ["b"]},
            {"id": "b", "type": "webhook", "config": {}},
        ]))
        assert "Call node 'a' missing target" in report.errors
        assert "Webhook node 'b' missing URL" in report.errors

    def test_schedule_cron_is_parsed(self):
        valid = validate_flow(make_flow([{"id": "a", "type": "schedule", "config": {"cron": "*/5 * * * *"}}]))
        assert valid.is_valid

        invalid = validate_flow(make_flow([{"id": "a", "type": "schedule", "config": {"cron": "every day"}}]))
        assert not invalid.is_valid
        assert invalid.errors[0].startswith("Schedule node 'a' has invalid cron expression")

    def test_schedule_needs_cron_or_interval(self):
        report = validate_flow(make_flow([{"id": "a", "type": "schedule", "config": {}}]))
        assert "Schedule node 'a' missing cron or interval" in report.errors

    def test_script_languages(self):
        report = validate_flow(make_flow([
            {"id": "a", "type": "transform", "config": {"script": "$.x", "language": "jsonpath"}, "next": ["b"]},
            {"id": "b", "type": "transform", "config": {"script": ".x", "language": "jq"}, "next": ["c"]},
            {"id": "c", "type": "branch",
             "config": {"condition": "x > 1", "language": "simple", "trueNodeId": "d", "falseNodeId": "d"}},
            {"id": "d", "type": "loop",
             "config": {"condition": "x", "language": "jsonpath", "bodyNodeId": "e"}},
            transform("e"),
        ]))
        assert report.errors == [
            "Transform node 'b' has unsupported language 'jq'",
            "Node 'd' has unsupported condition language 'jsonpath'",
        ]
