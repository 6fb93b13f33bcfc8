"""Structural validation of flow definitions.

Errors make a flow unrunnable; warnings (unreachable nodes, cycles,
missing HTTP method) are reported but do not block execution. Cycles can
be promoted to errors with ``reject_cycles``.
"""

from collections import Counter
from typing import Dict, List, Set

from flowrunner.constants import (
    CONDITION_LANGUAGES,
    CONTROL_EDGE_KEYS,
    CONTROL_FLOW_NODE_TYPES,
    TRANSFORM_LANGUAGES,
)
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import FlowDefinition, FlowNode, ValidationReport
from flowrunner.services.scheduler import build_cron_trigger

logger = get_logger(__name__)

CYCLE_WARNING = "Flow contains cycles - ensure proper exit conditions"


def successors(node: FlowNode) -> List[str]:
    """All outgoing edges: ``next`` plus control-flow targets named in config."""
    targets = list(node.next)
    for key in CONTROL_EDGE_KEYS:
        target = node.config.get(key)
        if isinstance(target, str) and target and target not in targets:
            targets.append(target)
    return targets


def find_reachable_nodes(flow: FlowDefinition) -> Set[str]:
    """Node ids reachable from the entry node."""
    reachable: Set[str] = set()
    if not flow.has_node(flow.entry):
        return reachable

    stack = [flow.entry]
    while stack:
        node_id = stack.pop()
        if node_id in reachable:
            continue
        reachable.add(node_id)
        node = flow.get_node(node_id)
        if node is None:
            continue
        stack.extend(t for t in successors(node) if t not in reachable)
    return reachable


def has_cycles(flow: FlowDefinition) -> bool:
    """Depth-first search from the entry; any edge back onto the stack is a cycle."""
    if not flow.has_node(flow.entry):
        return False

    visited: Set[str] = set()
    on_stack: Set[str] = set()
    # (node_id, iterator over successors)
    stack = [(flow.entry, iter(successors(flow.get_node(flow.entry))))]
    visited.add(flow.entry)
    on_stack.add(flow.entry)

    while stack:
        node_id, children = stack[-1]
        advanced = False
        for child_id in children:
            if child_id in on_stack:
                return True
            if child_id in visited:
                continue
            child = flow.get_node(child_id)
            if child is None:
                continue
            visited.add(child_id)
            on_stack.add(child_id)
            stack.append((child_id, iter(successors(child))))
            advanced = True
            break
        if not advanced:
            stack.pop()
            on_stack.discard(node_id)

    return False


def _check_node_config(flow: FlowDefinition, node: FlowNode,
                       errors: List[str], warnings: List[str]) -> None:
    config = node.config

    language = config.get("language")
    if node.type in CONTROL_FLOW_NODE_TYPES and language and language not in CONDITION_LANGUAGES:
        errors.append(f"Node '{node.id}' has unsupported condition language '{language}'")
    if node.type == "transform" and language and language not in TRANSFORM_LANGUAGES:
        errors.append(f"Transform node '{node.id}' has unsupported language '{language}'")

    if node.type == "http":
        if not config.get("url"):
            errors.append(f"HTTP node '{node.id}' missing URL")
        if not config.get("method"):
            warnings.append(f"HTTP node '{node.id}' missing method, defaulting to GET")

    elif node.type == "branch":
        if not config.get("condition") and config.get("condition") is not False:
            errors.append(f"Branch node '{node.id}' missing condition")
        true_id, false_id = config.get("trueNodeId"), config.get("falseNodeId")
        if not true_id or not false_id:
            errors.append(f"Branch node '{node.id}' missing true/false node references")
        for target in (true_id, false_id):
            if target and not flow.has_node(target):
                errors.append(f"Branch node '{node.id}' references non-existent node '{target}'")

    elif node.type == "loop":
        if not config.get("condition") and config.get("condition") is not False:
            errors.append(f"Loop node '{node.id}' missing condition")
        body_id = config.get("bodyNodeId")
        if not body_id:
            errors.append(f"Loop node '{node.id}' missing body node reference")
        elif not flow.has_node(body_id):
            errors.append(f"Loop node '{node.id}' references non-existent node '{body_id}'")
        elif flow.get_node(body_id).type in CONTROL_FLOW_NODE_TYPES:
            errors.append(f"Loop node '{node.id}' body must not be a branch or loop node")
        max_iterations = config.get("maxIterations")
        if max_iterations is not None and (not isinstance(max_iterations, int) or max_iterations < 0):
            errors.append(f"Loop node '{node.id}' has invalid maxIterations")

    elif node.type == "delay":
        duration = config.get("duration")
        if not isinstance(duration, (int, float)) or isinstance(duration, bool) or duration <= 0:
            errors.append(f"Delay node '{node.id}' missing or invalid duration")

    elif node.type == "transform":
        if not config.get("script"):
            errors.append(f"Transform node '{node.id}' missing script")

    elif node.type == "call":
        if not config.get("target") and not config.get("service"):
            errors.append(f"Call node '{node.id}' missing target")

    elif node.type == "webhook":
        if not config.get("url"):
            errors.append(f"Webhook node '{node.id}' missing URL")

    elif node.type == "schedule":
        cron = config.get("cron")
        if not cron and not config.get("interval"):
            errors.append(f"Schedule node '{node.id}' missing cron or interval")
        elif cron:
            try:
                build_cron_trigger(cron, config.get("timezone"))
            except ValueError as e:
                errors.append(f"Schedule node '{node.id}' has invalid cron expression: {e}")


def validate_flow(flow: FlowDefinition, reject_cycles: bool = False) -> ValidationReport:
    """Validate a flow definition.

    Args:
        flow: The flow to check.
        reject_cycles: Report cycles as an error instead of a warning.

    Returns:
        ValidationReport with ``is_valid`` false when any error was found.
    """
    errors: List[str] = []
    warnings: List[str] = []

    try:
        if not flow.has_node(flow.entry):
            errors.append(f"Entry node '{flow.entry}' not found in nodes")

        counts: Dict[str, int] = Counter(node.id for node in flow.nodes)
        for node_id, count in counts.items():
            if count > 1:
                errors.append(f"Duplicate node ID: {node_id}")

        for node in flow.nodes:
            for next_id in node.next:
                if not flow.has_node(next_id):
                    errors.append(f"Node '{node.id}' references non-existent node '{next_id}'")
            _check_node_config(flow, node, errors, warnings)

        reachable = find_reachable_nodes(flow)
        unreachable = [node.id for node in flow.nodes if node.id not in reachable]
        if unreachable and flow.has_node(flow.entry):
            warnings.append(f"Unreachable nodes: {', '.join(unreachable)}")

        if has_cycles(flow):
            if reject_cycles:
                errors.append("Flow contains cycles")
            else:
                warnings.append(CYCLE_WARNING)

    except Exception as e:
        logger.error("Flow validation crashed", flow_id=flow.id, error=str(e))
        errors.append(f"Validation error: {e}")

    if errors:
        logger.info("Flow validation failed", flow_id=flow.id, errors=len(errors), warnings=len(warnings))

    return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)
