"""Temporal worker for durable flow execution.

Uses class-based activities with a shared API client so every concurrent
activity reuses one HTTP connection pool.

The worker polls the flow task queue and executes:
- FlowExecutionWorkflow: walks the flow, schedules node activities
- FlowNodeActivities.execute_flow_node: executes individual nodes

Multiple workers can be started on different machines for horizontal
scaling:

    python -m flowrunner.services.temporal.worker
"""

import asyncio
from typing import Optional

from temporalio.client import Client
from temporalio.worker import Worker

from flowrunner.core.config import Settings
from flowrunner.core.logging import configure_logging, get_logger
from flowrunner.services.api_client import ApiClient
from flowrunner.services.temporal.activities import FlowNodeActivities
from flowrunner.services.temporal.client import TemporalClientWrapper
from flowrunner.services.temporal.workflow import FlowExecutionWorkflow

logger = get_logger(__name__)


def create_worker(client: Client, settings: Settings, api_client: ApiClient,
                  task_queue: Optional[str] = None) -> Worker:
    """Create a worker instance (not started).

    Args:
        client: Connected Temporal client
        settings: Application settings
        api_client: Shared API client for live node activities
        task_queue: Task queue override (defaults to TEMPORAL_TASK_QUEUE)
    """
    activities = FlowNodeActivities(settings, api_client)
    return Worker(
        client,
        task_queue=task_queue or settings.temporal_task_queue,
        workflows=[FlowExecutionWorkflow],
        activities=[activities.execute_flow_node],
        max_concurrent_activities=settings.temporal_worker_pool_size,
        max_concurrent_workflow_tasks=10,
    )


class TemporalWorkerManager:
    """Runs the Temporal worker as a background task of the API process."""

    def __init__(self, client: Client, settings: Settings, api_client: ApiClient):
        self.client = client
        self.settings = settings
        self.api_client = api_client
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        """Check if the worker is running."""
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start the Temporal worker in the background."""
        if self.is_running:
            logger.warning("Temporal worker already running")
            return

        self._worker = create_worker(self.client, self.settings, self.api_client)

        logger.info(
            "Starting Temporal worker",
            task_queue=self.settings.temporal_task_queue,
            pool_size=self.settings.temporal_worker_pool_size,
        )

        self._worker_task = asyncio.create_task(
            self._run_worker(),
            name="temporal-worker",
        )

    async def _run_worker(self) -> None:
        """Run the worker (background task)."""
        try:
            await self._worker.run()
        except asyncio.CancelledError:
            logger.info("Temporal worker cancelled")
        except Exception as e:
            logger.error("Temporal worker error", error=str(e))
            raise

    async def stop(self) -> None:
        """Stop the Temporal worker."""
        if not self.is_running:
            return

        logger.info("Stopping Temporal worker")

        if self._worker is not None:
            await self._worker.shutdown()

        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        self._worker = None
        logger.info("Temporal worker stopped")


async def run_standalone_worker(settings: Optional[Settings] = None) -> None:
    """Run the Temporal worker as a standalone process."""
    settings = settings or Settings()

    logger.info(
        "Starting standalone Temporal worker",
        server_address=settings.temporal_server_address,
        namespace=settings.temporal_namespace,
        task_queue=settings.temporal_task_queue,
    )

    wrapper = TemporalClientWrapper(settings)
    client = await wrapper.connect()
    api_client = ApiClient(settings)
    await api_client.startup()

    try:
        worker = create_worker(client, settings, api_client)
        logger.info("Worker running. Press Ctrl+C to stop.")
        await worker.run()
    finally:
        await api_client.shutdown()
        await wrapper.disconnect()


def main() -> None:
    settings = Settings()
    configure_logging(settings)
    asyncio.run(run_standalone_worker(settings))


if __name__ == "__main__":
    main()
