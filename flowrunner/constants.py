"""Centralized constants for node types and engine defaults.

Single source of truth for node type groupings and the names shared
between the runner, the Temporal workflow and its worker.
"""

from typing import FrozenSet

# =============================================================================
# NODE TYPES
# =============================================================================

# Node types handled by the walker itself, never dispatched to a handler
CONTROL_FLOW_NODE_TYPES: FrozenSet[str] = frozenset([
    'branch',
    'loop',
])

# Config keys that name other nodes (control-flow edges)
CONTROL_EDGE_KEYS = ('trueNodeId', 'falseNodeId', 'bodyNodeId')

# Script languages accepted by transform nodes and by branch/loop conditions
TRANSFORM_LANGUAGES: FrozenSet[str] = frozenset([
    'expression',
    'javascript',
    'jmespath',
    'jsonpath',
])

CONDITION_LANGUAGES: FrozenSet[str] = frozenset([
    'expression',
    'javascript',
    'simple',
])

# =============================================================================
# ENGINE DEFAULTS
# =============================================================================

DEFAULT_LOOP_MAX_ITERATIONS = 100
JITTER_FACTOR_MAX = 0.1
DEFAULT_TRANSFORM_OUTPUT = 'transform_result'

DELAY_UNITS_MS = {
    'ms': 1,
    's': 1000,
    'm': 60 * 1000,
    'h': 60 * 60 * 1000,
}

# =============================================================================
# DURABLE RUNTIME NAMES
# =============================================================================

FLOW_WORKFLOW_TYPE = 'FlowExecutionWorkflow'
EXECUTE_NODE_ACTIVITY = 'execute_flow_node'

SIGNAL_PAUSE = 'pause'
SIGNAL_RESUME = 'resume'
SIGNAL_CANCEL = 'cancel'
SIGNAL_UPDATE_VARIABLES = 'updateVariables'

DURABLE_SIGNALS: FrozenSet[str] = frozenset([
    SIGNAL_PAUSE,
    SIGNAL_RESUME,
    SIGNAL_CANCEL,
    SIGNAL_UPDATE_VARIABLES,
])

DURABLE_QUERIES: FrozenSet[str] = frozenset([
    'getStatus',
    'getProgress',
    'getVariables',
    'getLogs',
    'getState',
])

SEARCH_ATTRIBUTE_FLOW_ID = 'flowId'
SEARCH_ATTRIBUTE_FLOW_NAME = 'flowName'
