"""Factory for a fully wired orchestrator.

Builds the logging setup, snapshot store, context manager and orchestrator
from one OrchestratorSettings instance.
"""

from typing import Optional

from switchboard.config import OrchestratorSettings, load_settings_from_env
from switchboard.core.protocols import AgentBuilder, AgentLookup
from switchboard.observability.logging import get_logger, setup_logging
from switchboard.orchestration.context import ContextManager
from switchboard.orchestration.orchestrator import AgentOrchestrator
from switchboard.storage.database import Database, DatabaseConfig
from switchboard.storage.sql_store import SQLContextStore

logger = get_logger(__name__)


def create_context_manager(settings: OrchestratorSettings) -> ContextManager:
    """Create a context manager persisting to ``settings.database_url``.

    Args:
        settings: Orchestrator settings

    Returns:
        ContextManager backed by an SQLContextStore
    """
    database = Database(DatabaseConfig(url=settings.database_url))
    return ContextManager(
        expiration_seconds=settings.context_expiration_seconds,
        max_history_size=settings.max_history_size,
        store=SQLContextStore(database),
        auto_persist_history=settings.auto_persist_history,
    )


def create_orchestrator(
    agent_registry: AgentLookup,
    settings: Optional[OrchestratorSettings] = None,
    agent_factory: Optional[AgentBuilder] = None,
    configure_logging: bool = True,
) -> AgentOrchestrator:
    """Create and configure an orchestrator.

    This factory function:
    - Loads settings from the environment when none are given
    - Configures structlog with the settings' level and renderer
    - Creates a context manager with SQL snapshot persistence

    Args:
        agent_registry: Registry the orchestrator selects agents from
        settings: Settings to use (defaults to load_settings_from_env())
        agent_factory: Optional fallback for unregistered delegates
        configure_logging: Call setup_logging before building

    Returns:
        Configured AgentOrchestrator

    Examples:
        >>> registry = AgentRegistry()
        >>> registry.register(MembershipAgent())
        >>> with create_orchestrator(registry) as orchestrator:
        ...     orchestrator.process_user_request({"message": "List my plans"})
    """
    settings = settings or load_settings_from_env()
    if configure_logging:
        setup_logging(log_level=settings.log_level, json_logs=settings.json_logs)

    orchestrator = AgentOrchestrator(
        agent_registry,
        create_context_manager(settings),
        agent_factory=agent_factory,
        settings=settings,
    )
    logger.info(
        "orchestrator_created",
        max_delegation_depth=settings.max_delegation_depth,
        agent_timeout_seconds=settings.agent_timeout_seconds,
    )
    return orchestrator
