# campaign_engine/orchestrator/recovery.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from campaign_engine.common.metrics import RECOVERY_ACTIONS
from campaign_engine.common.timeutil import Clock, epoch_ms, ms_between, utcnow
from campaign_engine.data.models import ScheduledAction
from campaign_engine.orchestrator.ledger import ScheduledActionLedger, job_name_for
from campaign_engine.orchestrator.queue.retry_policies import Backoff
from campaign_engine.orchestrator.queue.scheduler import JobScheduler

log = logging.getLogger("outreach.recovery")


@dataclass
class RecoveryResult:
    total: int = 0
    recovered: int = 0
    failed: int = 0
    expired: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def recovery_job_id(action: ScheduledAction) -> str:
    """Stable per action and fire time, so a second pass can't double-enqueue."""
    return (
        f"recovery:{action.action_type.value}:{action.campaign_id}:"
        f"{action.id}:{epoch_ms(action.scheduled_at)}"
    )


def _chunks(rows: List[ScheduledAction], size: int):
    for i in range(0, len(rows), max(1, size)):
        yield rows[i:i + size]


class StartupRecovery:
    """
    Re-arms `pending` ledger rows whose queue job may never have existed.

    - older than the expiry threshold (strictly) -> expired, never re-armed
    - otherwise -> re-enqueued with the remaining delay, row set to processing
    One row failing is counted and the pass continues.
    """

    def __init__(
        self,
        ledger: ScheduledActionLedger,
        scheduler: JobScheduler,
        *,
        enabled: bool = True,
        batch_size: int = 50,
        expiry_threshold_seconds: int = 86400,
        job_attempts: int = 3,
        backoff_ms: int = 1000,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self._scheduler = scheduler
        self._enabled = enabled
        self._batch_size = batch_size
        self._threshold_ms = expiry_threshold_seconds * 1000
        self._attempts = job_attempts
        self._backoff = Backoff("exponential", backoff_ms)
        self._clock = clock

    @classmethod
    def from_settings(cls, ledger: ScheduledActionLedger, scheduler: JobScheduler, settings, clock: Clock = utcnow):
        return cls(
            ledger,
            scheduler,
            enabled=settings.RECOVERY_ENABLED,
            batch_size=settings.RECOVERY_BATCH_SIZE,
            expiry_threshold_seconds=settings.RECOVERY_EXPIRY_THRESHOLD_SECONDS,
            job_attempts=settings.RECOVERY_JOB_ATTEMPTS,
            backoff_ms=settings.RECOVERY_BACKOFF_MS,
            clock=clock,
        )

    async def recover(self, created_before: Optional[datetime] = None) -> RecoveryResult:
        result = RecoveryResult()
        if not self._enabled:
            log.info("Startup recovery disabled; skipping")
            return result

        if created_before is None:
            actions = await self._ledger.list_pending()
        else:
            actions = await self._ledger.list_orphaned(created_before)
        result.total = len(actions)
        if not actions:
            log.info("No pending scheduled actions to recover")
            return result

        now = self._clock()
        log.info("Recovering %d pending scheduled action(s)", len(actions))
        for batch_no, batch in enumerate(_chunks(actions, self._batch_size), start=1):
            for action in batch:
                outcome = await self._recover_one(action, now)
                setattr(result, outcome, getattr(result, outcome) + 1)
                RECOVERY_ACTIONS.labels(outcome).inc()
            log.debug("Recovery batch %d done (%d action(s))", batch_no, len(batch))

        log.info(
            "Recovery finished: total=%d recovered=%d failed=%d expired=%d",
            result.total, result.recovered, result.failed, result.expired,
            extra=result.to_dict(),
        )
        return result

    async def _recover_one(self, action: ScheduledAction, now: datetime) -> str:
        context = {
            "tenant_id": action.tenant_id,
            "campaign_id": action.campaign_id,
            "action_id": action.id,
            "action_type": action.action_type.value,
            "scheduled_at": action.scheduled_at.isoformat(),
        }
        try:
            overdue_ms = ms_between(now, action.scheduled_at)
            if overdue_ms > self._threshold_ms:
                await self._ledger.mark_expired(
                    action.id,
                    f"expired during recovery: {overdue_ms // 1000}s past scheduledAt "
                    f"(threshold {self._threshold_ms // 1000}s)",
                )
                log.info("Expired stale %s action %s", action.action_type.value, action.id, extra=context)
                return "expired"

            job_id = await self._scheduler.enqueue(
                self._ledger.queue_name,
                job_name_for(action.action_type),
                {**action.payload, "scheduledActionId": action.id},
                delay_ms=max(0, -overdue_ms),
                job_id=recovery_job_id(action),
                attempts=self._attempts,
                backoff=self._backoff,
            )
            await self._ledger.mark_processing(action.id, job_id)
            log.info("Re-armed %s action %s as %s", action.action_type.value, action.id, job_id, extra=context)
            return "recovered"
        except Exception as exc:
            log.error("Failed to recover action %s: %s", action.id, exc, extra=context, exc_info=True)
            return "failed"


class OrphanSweeper:
    """Periodic recovery pass for rows left `pending` longer than the grace period."""

    def __init__(
        self,
        recovery: StartupRecovery,
        interval_seconds: float,
        grace_seconds: float = 60,
        clock: Clock = utcnow,
    ) -> None:
        self._recovery = recovery
        self._interval = interval_seconds
        self._grace = timedelta(seconds=grace_seconds)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> RecoveryResult:
        return await self._recovery.recover(created_before=self._clock() - self._grace)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                log.exception("Orphan sweep failed")

    async def start(self) -> None:
        if self._interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="orphan-sweeper")
        log.info("Orphan sweeper every %ss (grace %ss)", self._interval, self._grace.total_seconds())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
