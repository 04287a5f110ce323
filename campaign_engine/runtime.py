# campaign_engine/runtime.py
from __future__ import annotations

import logging
from typing import Optional

from campaign_engine.common.timeutil import Clock, utcnow
from campaign_engine.config import Settings
from campaign_engine.data.memory_store import InMemoryCampaignStore
from campaign_engine.data.pg_store import PgCampaignStore
from campaign_engine.data.store import CampaignStore
from campaign_engine.orchestrator.execution_worker import CampaignExecutionWorker
from campaign_engine.orchestrator.ingest import EventIngestor
from campaign_engine.orchestrator.interpreter import PlanInterpreter
from campaign_engine.orchestrator.ledger import ScheduledActionLedger
from campaign_engine.orchestrator.queue.base import JobQueue
from campaign_engine.orchestrator.queue.memory import InMemoryJobQueue
from campaign_engine.orchestrator.queue.retry_policies import default_job_options
from campaign_engine.orchestrator.queue.scheduler import JobScheduler
from campaign_engine.orchestrator.queue.temporal import TemporalJobQueue
from campaign_engine.orchestrator.recovery import OrphanSweeper, RecoveryResult, StartupRecovery
from campaign_engine.orchestrator.send_worker import LoggingDispatcher, MessageDispatcher, SendActionService
from campaign_engine.orchestrator.timeout_worker import TimeoutReconciler

log = logging.getLogger("outreach.runtime")


def build_store(settings: Settings) -> CampaignStore:
    if settings.DATABASE_URL.startswith(("postgres://", "postgresql://")):
        return PgCampaignStore(settings.DATABASE_URL, settings.DB_POOL_MIN_SIZE, settings.DB_POOL_MAX_SIZE)
    return InMemoryCampaignStore()


def build_queue(settings: Settings, clock: Clock = utcnow) -> JobQueue:
    if settings.QUEUE_BACKEND == "temporal":
        return TemporalJobQueue(
            settings.TEMPORAL_TARGET,
            settings.TEMPORAL_NAMESPACE,
            drain_timeout_seconds=settings.WORKER_DRAIN_TIMEOUT_SECONDS,
        )
    return InMemoryJobQueue(clock=clock, tick_seconds=settings.QUEUE_TICK_SECONDS)


class EngineRuntime:
    """
    Explicitly wired engine: every service is constructed here and injected,
    so several isolated runtimes can coexist (tests do exactly that).

    start: store -> queue connection -> startup recovery -> workers -> sweeper
    stop:  sweeper -> worker intake + in-flight drain -> queue connection -> store
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[CampaignStore] = None,
        queue: Optional[JobQueue] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.store = store or build_store(settings)
        self.queue = queue or build_queue(settings, clock)
        self.scheduler = JobScheduler(self.queue, default_job_options(settings))
        self.ledger = ScheduledActionLedger(
            self.store, self.scheduler, queue_name=settings.CAMPAIGN_EXECUTION_QUEUE, clock=clock
        )
        self.interpreter = PlanInterpreter(
            self.store, self.ledger, clock=clock, allow_cycles=settings.ALLOW_PLAN_CYCLES
        )
        self.sender = SendActionService(self.store, self.interpreter, dispatcher or LoggingDispatcher(), clock=clock)
        self.reconciler = TimeoutReconciler(self.store, self.interpreter, clock=clock)
        self.worker = CampaignExecutionWorker(self.ledger, self.sender, self.reconciler)
        self.ingestor = EventIngestor(
            self.store, self.interpreter, ignored_events=settings.IGNORED_TRANSITION_EVENTS, clock=clock
        )
        self.recovery = StartupRecovery.from_settings(self.ledger, self.scheduler, settings, clock=clock)
        self.sweeper = OrphanSweeper(
            self.recovery,
            interval_seconds=settings.ORPHAN_SWEEP_INTERVAL_SECONDS,
            grace_seconds=settings.ORPHAN_GRACE_SECONDS,
            clock=clock,
        )
        self.last_recovery: Optional[RecoveryResult] = None
        self.ready = False

    async def start(self) -> None:
        log.info(
            "Engine starting | env=%s | store=%s | queue=%s",
            self.settings.ENVIRONMENT, type(self.store).__name__, type(self.queue).__name__,
        )
        await self.store.connect()
        if isinstance(self.store, PgCampaignStore):
            await self.store.ensure_schema()
        await self.scheduler.connect()

        # re-arm lost timers before taking new work
        self.last_recovery = await self.recovery.recover()

        self.worker.register(self.scheduler, concurrency=self.settings.WORKER_CONCURRENCY)
        await self.scheduler.start()
        await self.sweeper.start()
        self.ready = True
        log.info("Engine ready | recovery=%s", self.last_recovery.to_dict())

    async def stop(self) -> None:
        self.ready = False
        log.info("Engine stopping")
        await self.sweeper.stop()
        await self.scheduler.stop(timeout=self.settings.WORKER_DRAIN_TIMEOUT_SECONDS)
        await self.scheduler.close()
        await self.store.close()
        log.info("Engine stopped")
