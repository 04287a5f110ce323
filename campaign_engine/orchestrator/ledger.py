# campaign_engine/orchestrator/ledger.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from campaign_engine.common.timeutil import Clock, ms_between, utcnow
from campaign_engine.data.models import (
    OPEN_ACTION_STATUSES,
    ActionStatus,
    ActionType,
    ScheduledAction,
    new_id,
)
from campaign_engine.data.store import CampaignStore
from campaign_engine.orchestrator.queue.scheduler import JobScheduler

log = logging.getLogger("outreach.ledger")

CAMPAIGN_EXECUTION_QUEUE = "campaign_execution"

JOB_NAMES = {
    ActionType.SEND: "execute",
    ActionType.TIMEOUT: "timeout",
}


def job_name_for(action_type: ActionType) -> str:
    return JOB_NAMES[ActionType(action_type)]


class ScheduledActionLedger:
    """
    Durable record of every timer that should exist.

    Arming writes the `pending` row first, then enqueues, then flips the row to
    `processing` with the job handle. A crash (or broker outage) between the
    two leaves a `pending` row that startup recovery re-arms.
    """

    def __init__(
        self,
        store: CampaignStore,
        scheduler: JobScheduler,
        queue_name: str = CAMPAIGN_EXECUTION_QUEUE,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._queue = queue_name
        self._clock = clock

    @property
    def queue_name(self) -> str:
        return self._queue

    async def arm(
        self,
        *,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        node_id: str,
        action_type: ActionType,
        scheduled_at: datetime,
        payload: Dict[str, Any],
    ) -> ScheduledAction:
        now = self._clock()
        action_id = new_id()
        action = ScheduledAction(
            id=action_id,
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            contact_id=contact_id,
            node_id=node_id,
            action_type=action_type,
            scheduled_at=scheduled_at,
            payload={**payload, "scheduledActionId": action_id},
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_action(action)

        context = {
            "tenant_id": tenant_id,
            "campaign_id": campaign_id,
            "node_id": node_id,
            "action_id": action_id,
            "action_type": action.action_type.value,
            "scheduled_at": scheduled_at.isoformat(),
        }
        try:
            job_id = await self._scheduler.enqueue(
                self._queue,
                job_name_for(action.action_type),
                action.payload,
                delay_ms=max(0, ms_between(scheduled_at, now)),
                job_id=f"{action.action_type.value}:{campaign_id}:{action_id}",
            )
        except Exception as exc:
            log.error(
                "Enqueue failed for %s action %s; left pending for recovery: %s",
                action.action_type.value, action_id, exc, extra=context, exc_info=True,
            )
            return action

        updated = await self.mark_processing(action_id, job_id)
        log.info("Armed %s action %s for %s", action.action_type.value, action_id, scheduled_at.isoformat(), extra=context)
        return updated or await self._store.get_action(action_id) or action

    # ---- Status transitions (compare-and-set) -------------------------------

    async def mark_processing(self, action_id: str, job_id: str) -> Optional[ScheduledAction]:
        return await self._store.update_action_status(
            action_id, ActionStatus.PROCESSING,
            expected=[ActionStatus.PENDING], at=self._clock(), bull_job_id=job_id,
        )

    async def mark_completed(self, action_id: str) -> Optional[ScheduledAction]:
        return await self._store.update_action_status(
            action_id, ActionStatus.COMPLETED, expected=OPEN_ACTION_STATUSES, at=self._clock(),
        )

    async def mark_failed(self, action_id: str, error: str) -> Optional[ScheduledAction]:
        return await self._store.update_action_status(
            action_id, ActionStatus.FAILED, expected=OPEN_ACTION_STATUSES, at=self._clock(), error=error,
        )

    async def mark_expired(self, action_id: str, reason: str) -> Optional[ScheduledAction]:
        return await self._store.update_action_status(
            action_id, ActionStatus.EXPIRED, expected=[ActionStatus.PENDING], at=self._clock(), error=reason,
        )

    async def cancel_campaign_actions(
        self, tenant_id: str, campaign_id: str, reason: str, except_job_id: Optional[str] = None
    ) -> int:
        """Mark open actions canceled. Their queue jobs still fire and no-op.

        The action whose job is running right now (`except_job_id`) is left
        open so its worker can complete it.
        """
        canceled = 0
        for action in await self._store.list_campaign_actions(tenant_id, campaign_id):
            if action.status not in OPEN_ACTION_STATUSES:
                continue
            if except_job_id and action.bull_job_id == except_job_id:
                continue
            row = await self._store.update_action_status(
                action.id, ActionStatus.CANCELED, expected=OPEN_ACTION_STATUSES,
                at=self._clock(), error=reason,
            )
            if row is not None:
                canceled += 1
        if canceled:
            log.info(
                "Canceled %d scheduled action(s) for campaign %s: %s", canceled, campaign_id, reason,
                extra={"tenant_id": tenant_id, "campaign_id": campaign_id},
            )
        return canceled

    # ---- Queries ------------------------------------------------------------

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        return await self._store.get_action(action_id)

    async def list_pending(self) -> List[ScheduledAction]:
        return await self._store.list_actions_by_status(ActionStatus.PENDING)

    async def list_orphaned(self, created_before: datetime) -> List[ScheduledAction]:
        return await self._store.list_actions_by_status(ActionStatus.PENDING, created_before=created_before)

    async def list_for_campaign(self, tenant_id: str, campaign_id: str) -> List[ScheduledAction]:
        return await self._store.list_campaign_actions(tenant_id, campaign_id)
