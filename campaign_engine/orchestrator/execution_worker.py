# campaign_engine/orchestrator/execution_worker.py
from __future__ import annotations

import logging
from typing import Any, Dict

from campaign_engine.common.errors import is_unrecoverable
from campaign_engine.data.models import ActionType
from campaign_engine.orchestrator.ledger import ScheduledActionLedger, job_name_for
from campaign_engine.orchestrator.queue.base import Job
from campaign_engine.orchestrator.queue.scheduler import JobScheduler
from campaign_engine.orchestrator.send_worker import SendActionService
from campaign_engine.orchestrator.timeout_worker import TimeoutReconciler

log = logging.getLogger("outreach.worker")


class CampaignExecutionWorker:
    """
    Consumer for the campaign execution queue.

    Routes `execute` jobs to the send service and `timeout` jobs to the
    reconciler, and keeps the scheduled-action row in step with the outcome:
    completed on return, failed once no retry will follow.
    """

    def __init__(
        self,
        ledger: ScheduledActionLedger,
        sender: SendActionService,
        reconciler: TimeoutReconciler,
    ) -> None:
        self._ledger = ledger
        self._sender = sender
        self._reconciler = reconciler

    def register(self, scheduler: JobScheduler, concurrency: int) -> None:
        scheduler.register_worker(
            self._ledger.queue_name,
            {
                job_name_for(ActionType.SEND): self.handle_send,
                job_name_for(ActionType.TIMEOUT): self.handle_timeout,
            },
            concurrency=concurrency,
        )

    async def handle_send(self, job: Job) -> Dict[str, Any]:
        return await self._run(job, self._sender.process(job.payload))

    async def handle_timeout(self, job: Job) -> Dict[str, Any]:
        return await self._run(job, self._reconciler.process(job.payload, job_id=job.id))

    async def _run(self, job: Job, work) -> Dict[str, Any]:
        action_id = (job.payload or {}).get("scheduledActionId")
        try:
            result = await work
        except Exception as exc:
            if action_id and (is_unrecoverable(exc) or job.is_final_attempt):
                await self._ledger.mark_failed(action_id, f"{exc.__class__.__name__}: {exc}")
            raise
        if action_id:
            await self._ledger.mark_completed(action_id)
        else:
            log.debug("Job %s carried no scheduledActionId; ledger untouched", job.id)
        return result
