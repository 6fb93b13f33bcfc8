"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from flowrunner.core.config import Settings
from flowrunner.core.database import Database
from flowrunner.services.api_client import ApiClient
from flowrunner.services.flow_runner import FlowRunnerService
from flowrunner.services.scheduler import FlowScheduler
from flowrunner.services.temporal.client import TemporalClientWrapper


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Execution record store
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Shared outbound HTTP client (live http/webhook/call nodes)
    api_client = providers.Singleton(
        ApiClient,
        settings=settings
    )

    # Durable runtime adapter
    temporal_client = providers.Singleton(
        TemporalClientWrapper,
        settings=settings
    )

    # Services
    flow_runner = providers.Singleton(
        FlowRunnerService,
        settings=settings,
        api_client=api_client,
        temporal_client=temporal_client,
        database=database
    )

    flow_scheduler = providers.Singleton(
        FlowScheduler,
        runner=flow_runner,
        settings=settings
    )


# Global container instance
container = Container()
