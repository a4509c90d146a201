"""Periodic agent cycle: detect waste, classify, create and execute recommendations."""

import asyncio
import random
import time
from typing import Callable, Sequence

import structlog

from app.models.recommendation import ExecutionMode, RecommendationStatus
from app.schemas.agent import AgentConfiguration, CycleSummary
from app.schemas.recommendation import ContextItem, ExecutionCandidate, RecommendationDraft
from app.schemas.resource import ResourceSnapshot
from app.services.agent_config import AgentConfigStore
from app.services.circuit_breaker import CircuitBreaker
from app.services.collaborators import ContextStore, RecommendationProducer, ResourceSource
from app.services.recommendation_state import RecommendationStateMachine
from app.services.risk_classifier import build_candidate, build_candidate_from_raw, resolve_execution_mode
from app.services.waste_detector import WasteVerdict, find_wasteful

logger = structlog.get_logger()


class CycleRunner:
    """
    Runs agent cycles for one tenant.

    ``tick`` is guarded by a reentrancy flag: a tick that fires while a cycle
    is still running is skipped, never queued. Failures inside a cycle are
    logged and never escape ``tick``.
    """

    def __init__(
        self,
        tenant_id: str,
        resource_source: ResourceSource,
        config_store: AgentConfigStore,
        state_machine: RecommendationStateMachine,
        rng: random.Random | None = None,
        min_batch_size: int = 2,
        max_batch_size: int = 5,
        executor_name: str = "autonomous-agent",
        context_store: ContextStore | None = None,
        context_breaker: CircuitBreaker | None = None,
        producer: RecommendationProducer | None = None,
        context_top_k: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if min_batch_size < 1 or max_batch_size < min_batch_size:
            raise ValueError("Batch bounds must satisfy 1 <= min_batch_size <= max_batch_size")

        self.tenant_id = tenant_id
        self.resource_source = resource_source
        self.config_store = config_store
        self.state_machine = state_machine
        self.rng = rng or random.Random()
        self.min_batch_size = min_batch_size
        self.max_batch_size = max_batch_size
        self.executor_name = executor_name
        self.context_store = context_store
        self.context_breaker = context_breaker
        self.producer = producer
        self.context_top_k = context_top_k
        self.clock = clock

        self._running = False
        self._cycle_number = 0
        self.skipped_ticks = 0
        self._stop_event: asyncio.Event | None = None
        self._tick_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_number

    async def tick(self) -> CycleSummary | None:
        """
        Run one cycle unless one is already in progress.

        Returns:
            The cycle summary, or None if the tick was skipped or the cycle failed
        """
        if self._running:
            self.skipped_ticks += 1
            logger.info("cycle.skipped", tenant_id=self.tenant_id, reason="previous cycle still running")
            return None

        self._running = True
        try:
            return await self.run_cycle()
        except Exception as e:
            logger.exception("cycle.failed", tenant_id=self.tenant_id, error=str(e))
            return None
        finally:
            self._running = False

    async def run_cycle(self) -> CycleSummary:
        """Run every step of one cycle and return its counters."""
        self._cycle_number += 1
        summary = CycleSummary(cycle_number=self._cycle_number)
        started = self.clock()
        log = logger.bind(tenant_id=self.tenant_id, cycle=self._cycle_number)

        config = await self.config_store.get()

        await self._drain_executable(summary)

        snapshots = await self.resource_source.list_resources(self.tenant_id)
        summary.resources_scanned = len(snapshots)

        wasteful = find_wasteful(snapshots)
        summary.wasteful_resources = len(wasteful)

        active = await self.state_machine.list_active_resource_ids(self.tenant_id)
        candidates = [(s, v) for s, v in wasteful if s.resource_id not in active]

        batch = self.select_batch(candidates)
        summary.selected = len(batch)

        for snapshot, verdict in batch:
            await self._process_resource(snapshot, verdict, config, summary)

        if config.ai_mode and self.producer is not None:
            selected_ids = {s.resource_id for s, _ in batch}
            remaining = [s for s, _ in candidates if s.resource_id not in selected_ids]
            await self._run_ai_analysis(remaining, config, summary)

        summary.duration_seconds = round(self.clock() - started, 3)
        log.info(
            "cycle.completed",
            scanned=summary.resources_scanned,
            wasteful=summary.wasteful_resources,
            selected=summary.selected,
            created=summary.created,
            deduplicated=summary.deduplicated,
            autonomous=summary.autonomous,
            hitl=summary.hitl,
            executed=summary.executed,
            failed=summary.failed,
            errors=summary.errors,
            total_monthly_savings=round(summary.total_monthly_savings, 2),
            duration_seconds=summary.duration_seconds,
        )
        return summary

    def select_batch(
        self, candidates: Sequence[tuple[ResourceSnapshot, WasteVerdict]]
    ) -> list[tuple[ResourceSnapshot, WasteVerdict]]:
        """Random subset of ``randint(min, max)`` candidates, capped at the candidate count."""
        if not candidates:
            return []
        size = min(self.rng.randint(self.min_batch_size, self.max_batch_size), len(candidates))
        return self.rng.sample(list(candidates), size)

    async def run_forever(self, interval: float) -> None:
        """Fire ``tick`` every ``interval`` seconds until ``stop`` is called."""
        if interval <= 0:
            raise ValueError("interval must be greater than zero")

        self._stop_event = asyncio.Event()
        logger.info("agent.started", tenant_id=self.tenant_id, interval_seconds=interval)
        while not self._stop_event.is_set():
            task = asyncio.create_task(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        logger.info("agent.stopped", tenant_id=self.tenant_id, cycles=self._cycle_number)

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def _drain_executable(self, summary: CycleSummary) -> None:
        try:
            executable = await self.state_machine.list_executable(self.tenant_id)
        except Exception as e:
            summary.errors += 1
            logger.exception("cycle.drain_failed", tenant_id=self.tenant_id, error=str(e))
            return

        for recommendation in executable:
            try:
                result = await self.state_machine.execute(recommendation.id, executed_by=self.executor_name)
            except Exception as e:
                summary.errors += 1
                logger.exception(
                    "cycle.drain_execution_failed",
                    recommendation_id=str(recommendation.id),
                    error=str(e),
                )
                continue
            summary.drained += 1
            self._count_execution(result.status, summary)

    async def _process_resource(
        self,
        snapshot: ResourceSnapshot,
        verdict: WasteVerdict,
        config: AgentConfiguration,
        summary: CycleSummary,
    ) -> None:
        try:
            draft = build_candidate(snapshot, self.rng, reason=verdict.reason)
            if draft is None:
                summary.skipped_no_cost += 1
                return
            await self._submit(draft, config, summary)
        except Exception as e:
            summary.errors += 1
            logger.exception(
                "cycle.resource_failed",
                tenant_id=self.tenant_id,
                resource_id=snapshot.resource_id,
                error=str(e),
            )

    async def _submit(
        self, draft: RecommendationDraft, config: AgentConfiguration, summary: CycleSummary
    ) -> None:
        mode = resolve_execution_mode(ExecutionCandidate.from_draft(draft), config)
        created = await self.state_machine.create(draft, mode)
        if created is None:
            summary.deduplicated += 1
            return

        summary.created += 1
        summary.total_monthly_savings += created.projected_monthly_savings

        if mode == ExecutionMode.AUTONOMOUS:
            summary.autonomous += 1
            result = await self.state_machine.execute(created.id, executed_by=self.executor_name)
            self._count_execution(result.status, summary)
        else:
            summary.hitl += 1
            await self.state_machine.request_approval(created)

    async def _run_ai_analysis(
        self,
        resources: list[ResourceSnapshot],
        config: AgentConfiguration,
        summary: CycleSummary,
    ) -> None:
        if not resources:
            return

        context: list[ContextItem] = []
        if self.context_store is not None:
            store = self.context_store
            query = "cost optimization for " + ", ".join(sorted({r.resource_type for r in resources}))

            async def retrieve() -> list[ContextItem]:
                return await store.retrieve_context(query, self.context_top_k)

            if self.context_breaker is not None:
                context = await self.context_breaker.execute_with_fallback(retrieve, fallback=[])
            else:
                try:
                    context = await retrieve()
                except Exception as e:
                    logger.warning("cycle.context_unavailable", error=str(e))

        try:
            raw_recommendations = await self.producer.analyze(resources, context)
        except Exception as e:
            summary.errors += 1
            logger.exception("cycle.ai_analysis_failed", tenant_id=self.tenant_id, error=str(e))
            return

        by_id = {r.resource_id: r for r in resources}
        for raw in raw_recommendations:
            snapshot = by_id.get(raw.resource_id)
            if snapshot is None:
                logger.warning("cycle.ai_unknown_resource", resource_id=raw.resource_id)
                continue
            try:
                draft = build_candidate_from_raw(raw, snapshot, self.rng)
                if draft is None:
                    summary.skipped_no_cost += 1
                    continue
                await self._submit(draft, config, summary)
                summary.ai_recommendations += 1
            except Exception as e:
                summary.errors += 1
                logger.exception("cycle.ai_resource_failed", resource_id=raw.resource_id, error=str(e))

    @staticmethod
    def _count_execution(status: str, summary: CycleSummary) -> None:
        if status == RecommendationStatus.EXECUTED.value:
            summary.executed += 1
        elif status == RecommendationStatus.FAILED.value:
            summary.failed += 1
