"""Composition root: wires the agent's services as explicit instances."""

import random
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.services.agent_config import AgentConfigStore, defaults_from_settings
from app.services.circuit_breaker import CircuitBreaker
from app.services.collaborators import (
    ContextStore,
    DatabaseResourceSource,
    EventBroadcaster,
    HttpContextStore,
    InMemoryEventBroadcaster,
    MutationExecutor,
    Notifier,
    NullNotifier,
    RecommendationProducer,
    ResourceSource,
    SimulatedMutationExecutor,
    SlackNotifier,
)
from app.services.cycle_runner import CycleRunner
from app.services.recommendation_state import RecommendationStateMachine

logger = structlog.get_logger()


@dataclass
class Agent:
    """Fully wired agent for one tenant."""

    settings: Settings
    config_store: AgentConfigStore
    context_breaker: CircuitBreaker
    state_machine: RecommendationStateMachine
    runner: CycleRunner
    broadcaster: EventBroadcaster
    started: bool = False

    async def start(self) -> None:
        """Seed missing configuration keys."""
        await self.config_store.initialize_defaults()
        self.started = True

    async def run_forever(self) -> None:
        await self.runner.run_forever(self.settings.AGENT_CYCLE_INTERVAL_SECONDS)

    async def shutdown(self) -> None:
        self.runner.stop()
        await self.state_machine.wait_for_notifications()


def build_agent(
    settings: Settings,
    session_factory: Callable[[], AsyncSession],
    *,
    tenant_id: str | None = None,
    rng: random.Random | None = None,
    resource_source: ResourceSource | None = None,
    mutation_executor: MutationExecutor | None = None,
    notifier: Notifier | None = None,
    broadcaster: EventBroadcaster | None = None,
    context_store: ContextStore | None = None,
    producer: RecommendationProducer | None = None,
    config_store: AgentConfigStore | None = None,
    context_breaker: CircuitBreaker | None = None,
    **runner_overrides: Any,
) -> Agent:
    """
    Build an agent from settings, with optional collaborator overrides.

    Args:
        settings: Application settings
        session_factory: Async session factory
        tenant_id: Tenant to run for (defaults to settings.SYSTEM_TENANT_ID)
        rng: Random source (seeded from AGENT_RANDOM_SEED when omitted)
        **runner_overrides: Extra keyword arguments for CycleRunner (e.g. clock)

    Returns:
        Agent with independent instances of every service
    """
    tenant_id = tenant_id or settings.SYSTEM_TENANT_ID
    rng = rng or random.Random(settings.AGENT_RANDOM_SEED)

    if config_store is None:
        config_store = AgentConfigStore(session_factory, tenant_id, defaults_from_settings(settings))

    if context_breaker is None:
        context_breaker = CircuitBreaker(
            "vector-store",
            failure_threshold=settings.VECTOR_STORE_FAILURE_THRESHOLD,
            success_threshold=settings.VECTOR_STORE_SUCCESS_THRESHOLD,
            reset_timeout=settings.VECTOR_STORE_RESET_TIMEOUT_SECONDS,
            call_timeout=settings.VECTOR_STORE_CALL_TIMEOUT_SECONDS,
        )

    if context_store is None and settings.VECTOR_STORE_URL:
        context_store = HttpContextStore(
            settings.VECTOR_STORE_URL,
            api_key=settings.VECTOR_STORE_API_KEY,
            timeout=settings.VECTOR_STORE_CALL_TIMEOUT_SECONDS,
        )

    if notifier is None:
        if settings.SLACK_WEBHOOK_URL:
            notifier = SlackNotifier(settings.SLACK_WEBHOOK_URL, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
        else:
            notifier = NullNotifier()

    broadcaster = broadcaster or InMemoryEventBroadcaster()

    state_machine = RecommendationStateMachine(
        session_factory,
        mutation_executor=mutation_executor or SimulatedMutationExecutor(),
        broadcaster=broadcaster,
        notifier=notifier,
        requested_by=settings.AGENT_EXECUTOR_NAME,
        max_retries=settings.TRANSACTION_MAX_RETRIES,
        base_delay=settings.TRANSACTION_BASE_DELAY_SECONDS,
        max_delay=settings.TRANSACTION_MAX_DELAY_SECONDS,
    )

    runner = CycleRunner(
        tenant_id=tenant_id,
        resource_source=resource_source or DatabaseResourceSource(session_factory),
        config_store=config_store,
        state_machine=state_machine,
        rng=rng,
        min_batch_size=settings.AGENT_MIN_BATCH_SIZE,
        max_batch_size=settings.AGENT_MAX_BATCH_SIZE,
        executor_name=settings.AGENT_EXECUTOR_NAME,
        context_store=context_store,
        context_breaker=context_breaker,
        producer=producer,
        context_top_k=settings.VECTOR_STORE_TOP_K,
        **runner_overrides,
    )

    logger.info(
        "agent.built",
        tenant_id=tenant_id,
        context_store=type(context_store).__name__ if context_store else None,
        notifier=type(notifier).__name__,
        producer=type(producer).__name__ if producer else None,
    )
    return Agent(
        settings=settings,
        config_store=config_store,
        context_breaker=context_breaker,
        state_machine=state_machine,
        runner=runner,
        broadcaster=broadcaster,
    )
