"""Temporal integration for durable flow execution.

When a run asks for durable mode and the client is connected:
- The flow is started as a FlowExecutionWorkflow on the flow task queue
- Each task node runs as an activity with its own retry policy
- Delays are durable timers; pause/resume/cancel/updateVariables arrive
  as signals and run state is readable through queries

When Temporal is unreachable the flow runner falls back to local
execution.
"""

from .client import TemporalClientWrapper, map_status
from .state import DurableExecutionState, DurableStatus

__all__ = ["TemporalClientWrapper", "map_status", "DurableExecutionState", "DurableStatus"]
