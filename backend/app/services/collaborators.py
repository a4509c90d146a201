"""Collaborator interfaces consumed by the agent core, with default implementations."""

import asyncio
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud import cloud_resource as resource_crud
from app.schemas.recommendation import (
    ContextItem,
    MutationResult,
    RawRecommendation,
    RecommendationEvent,
    RecommendationRead,
)
from app.schemas.resource import ResourceSnapshot

logger = structlog.get_logger()


@runtime_checkable
class ResourceSource(Protocol):
    async def list_resources(self, tenant_id: str) -> list[ResourceSnapshot]: ...


@runtime_checkable
class RecommendationProducer(Protocol):
    """Optional AI analysis path; output goes through the same classification contract."""

    async def analyze(
        self, resources: Sequence[ResourceSnapshot], context: Sequence[ContextItem]
    ) -> list[RawRecommendation]: ...


@runtime_checkable
class ContextStore(Protocol):
    async def retrieve_context(self, query: str, k: int) -> list[ContextItem]: ...


@runtime_checkable
class MutationExecutor(Protocol):
    async def apply(self, recommendation: RecommendationRead) -> MutationResult: ...


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, event: RecommendationEvent) -> None: ...


@runtime_checkable
class EventBroadcaster(Protocol):
    async def publish(self, event: RecommendationEvent) -> None: ...


class DatabaseResourceSource:
    """Reads resource snapshots from the ``cloud_resources`` inventory table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self.session_factory = session_factory

    async def list_resources(self, tenant_id: str) -> list[ResourceSnapshot]:
        async with self.session_factory() as session:
            resources = await resource_crud.list_resources(session, tenant_id)
        return [ResourceSnapshot.from_model(r) for r in resources]


class HttpContextStore:
    """
    Vector-context store client.

    Posts ``{"query", "top_k"}`` to ``{base_url}/query`` and reads a
    ``matches`` list. Errors propagate; callers wrap this in a circuit breaker.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def retrieve_context(self, query: str, k: int) -> list[ContextItem]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Api-Key"] = self.api_key

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/query",
                json={"query": query, "top_k": k, "include_metadata": True},
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()

        items = []
        for match in data.get("matches", []):
            metadata = match.get("metadata") or {}
            items.append(
                ContextItem(
                    id=str(match.get("id", "")),
                    content=str(metadata.get("text", "")),
                    score=match.get("score"),
                    metadata=metadata,
                )
            )
        return items


class SimulatedMutationExecutor:
    """
    Mutation executor that makes no cloud call.

    Reports the recommended configuration as the resulting state and the
    projected monthly savings as realized.
    """

    async def apply(self, recommendation: RecommendationRead) -> MutationResult:
        logger.info(
            "mutation.simulated",
            recommendation_id=str(recommendation.id),
            resource_id=recommendation.resource_id,
            type=recommendation.type,
        )
        return MutationResult(
            success=True,
            after_config=dict(recommendation.recommended_config),
            actual_savings=recommendation.projected_monthly_savings,
        )


class NullNotifier:
    """Notifier that only logs."""

    async def notify(self, event: RecommendationEvent) -> None:
        logger.debug("notification.skipped", event_type=event.type, recommendation_id=str(event.recommendation_id))


class SlackNotifier:
    """Posts recommendation events to a Slack incoming webhook; failures are logged, never raised."""

    def __init__(self, webhook_url: str, timeout: float = 5.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    @staticmethod
    def format_message(event: RecommendationEvent) -> dict[str, Any]:
        title = event.title or event.resource_id
        lines = [f"*{event.type.replace('_', ' ').title()}*: {title}"]
        lines.append(f"Resource `{event.resource_id}` is now *{event.status.value}*")
        if event.execution_mode:
            lines.append(f"Execution mode: {event.execution_mode}")
        if event.projected_monthly_savings is not None:
            lines.append(f"Projected savings: ${event.projected_monthly_savings:,.2f}/month")
        if event.error:
            lines.append(f"Error: {event.error}")
        return {"text": "\n".join(lines)}

    async def notify(self, event: RecommendationEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=self.format_message(event))
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "notification.failed",
                event_type=event.type,
                recommendation_id=str(event.recommendation_id),
                error=str(e),
            )


class InMemoryEventBroadcaster:
    """
    Fan-out of recommendation events to in-process subscribers.

    Each subscriber owns a bounded queue; when it is full the oldest event is
    dropped so a slow subscriber never blocks the agent.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: list[asyncio.Queue[RecommendationEvent]] = []
        self.dropped_events = 0

    def subscribe(self) -> asyncio.Queue[RecommendationEvent]:
        queue: asyncio.Queue[RecommendationEvent] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[RecommendationEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: RecommendationEvent) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                self.dropped_events += 1
            queue.put_nowait(event)
        logger.debug(
            "event.published",
            event_type=event.type,
            recommendation_id=str(event.recommendation_id),
            subscribers=len(self._subscribers),
        )
