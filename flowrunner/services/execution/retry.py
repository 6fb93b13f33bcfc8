"""Retry/backoff wrapper around a single node invocation.

Delay before retry n (1-indexed, retries only):

    backoff_ms * 2^(n-1) * (1 + jitter_factor)

where ``jitter_factor`` is uniform in [0, 0.1) when the policy enables
jitter and 0 otherwise. The sleep and random sources are injectable so
timing can be asserted without waiting.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

from flowrunner.constants import JITTER_FACTOR_MAX
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import FlowNode, RetryPolicy
from flowrunner.services.execution.exceptions import NodeExecutionError

logger = get_logger(__name__)

DEFAULT_RETRY_POLICY = RetryPolicy()

SleepFn = Callable[[float], Awaitable[Any]]
RetryHook = Callable[[FlowNode, int, float, NodeExecutionError], None]


def calculate_backoff(policy: RetryPolicy, attempt: int,
                      rng: Callable[[], float] = random.random) -> float:
    """Delay in milliseconds before retry ``attempt`` (1-indexed).

    Args:
        policy: The node's retry policy
        attempt: Retry number, 1 for the first retry

    Returns:
        Delay in milliseconds
    """
    delay = policy.backoff_ms * (2 ** (attempt - 1))
    if policy.jitter:
        delay *= 1 + rng() * JITTER_FACTOR_MAX
    return delay


class RetryExecutor:
    """Runs node operations with the node's retry policy."""

    def __init__(self, sleep: Optional[SleepFn] = None,
                 rng: Callable[[], float] = random.random,
                 on_retry: Optional[RetryHook] = None):
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self._on_retry = on_retry

    async def run(self, node: FlowNode, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Invoke ``operation`` up to ``max_attempts`` times.

        Only NodeExecutionError is retried; anything else propagates
        immediately.

        Raises:
            NodeExecutionError: the last failure, with ``attempts`` set to
                the number of invocations made.
        """
        policy = node.retry_policy or DEFAULT_RETRY_POLICY
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except NodeExecutionError as e:
                if attempt >= policy.max_attempts:
                    if policy.max_attempts > 1:
                        logger.warning("Node retries exhausted", node_id=node.id, attempts=attempt, error=e.message)
                    raise NodeExecutionError(node.id, e.message, attempts=attempt) from e

                delay_ms = calculate_backoff(policy, attempt, self._rng)
                logger.info(
                    "Retrying node",
                    node_id=node.id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay_ms=round(delay_ms, 2),
                    error=e.message,
                )
                if self._on_retry is not None:
                    self._on_retry(node, attempt, delay_ms, e)
                await self._sleep(delay_ms / 1000)
