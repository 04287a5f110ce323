# campaign_engine/orchestrator/interpreter.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from campaign_engine.common.errors import InvalidPayloadError
from campaign_engine.common.events import is_timeout_class
from campaign_engine.common.metrics import TRANSITIONS
from campaign_engine.common.timeutil import Clock, ms_between, utcnow
from campaign_engine.data.models import (
    ActionType,
    CampaignInstance,
    InstanceStatus,
    ScheduledAction,
)
from campaign_engine.data.store import CampaignStore
from campaign_engine.orchestrator.ledger import ScheduledActionLedger
from campaign_engine.orchestrator.payloads import SendJobPayload, TimeoutJobPayload
from campaign_engine.orchestrator.plan import (
    CampaignPlan,
    NodeAction,
    PlanNode,
    Transition,
    load_plan,
)
from campaign_engine.policy.schedule_time import calculate_schedule_time, parse_duration

log = logging.getLogger("outreach.interpreter")

PlanLike = Union[CampaignPlan, Dict[str, Any]]


class Reason:
    INITIALIZED = "initialized"
    TRANSITIONED = "transitioned"
    CAMPAIGN_STOPPED = "campaign_stopped"
    STALE_NODE = "stale_node"
    NO_MATCHING_TRANSITION = "no_matching_transition"
    TIMING_NOT_MET = "timing_constraints_not_met"
    CAMPAIGN_NOT_FOUND = "campaign_not_found"
    CAMPAIGN_NOT_ACTIVE = "campaign_not_active"
    NODE_NOT_FOUND = "node_not_found"
    TARGET_NOT_FOUND = "target_node_not_found"
    REAL_EVENT_EXISTS = "real_event_exists"
    CALENDAR_CLICK_FOUND = "calendar_click_found"
    MISSING_CAMPAIGN_DATA = "missing_campaign_data"
    SENT = "sent"
    ALREADY_SENT = "already_sent"
    EVENT_IGNORED = "event_ignored"


class NextAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scheduled: bool = False
    action_type: Optional[str] = Field(default=None, alias="actionType")
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")
    scheduled_action_id: Optional[str] = Field(default=None, alias="scheduledActionId")


class TransitionResult(BaseModel):
    """Uniform outcome of every interpreter entry point; only a performed transition has success=True."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    from_node_id: Optional[str] = Field(default=None, alias="fromNodeId")
    to_node_id: Optional[str] = Field(default=None, alias="toNodeId")
    next_action: NextAction = Field(default_factory=NextAction, alias="nextAction")
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def is_transition_valid(transition: Transition, node_start: Optional[datetime], now: datetime) -> bool:
    """
    `within`: the event must arrive no later than the window after node entry.
    `after`: the event counts only once the delay has elapsed.
    Unknown entry time means the constraint can't be checked, so it passes.
    """
    if node_start is None or not (transition.within or transition.after):
        return True
    elapsed = ms_between(now, node_start)
    if is_timeout_class(transition.on):
        # a timeout's window is always a minimum wait
        return elapsed >= parse_duration(transition.after or transition.within)
    if transition.within:
        return elapsed <= parse_duration(transition.within)
    return elapsed >= parse_duration(transition.after)


class PlanInterpreter:
    """
    Per-contact state machine over a CampaignPlan.

    Safe to call concurrently: the node change is a compare-and-set in the
    store, so two events racing out of the same node produce one transition
    and one `stale_node`.
    """

    def __init__(
        self,
        store: CampaignStore,
        ledger: ScheduledActionLedger,
        clock: Clock = utcnow,
        allow_cycles: bool = False,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._allow_cycles = allow_cycles

    # ---- Entry points -------------------------------------------------------

    async def initialize_campaign(
        self,
        *,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        plan: PlanLike,
        lead_id: Optional[str] = None,
        channel: str = "email",
    ) -> TransitionResult:
        """Create the instance at the start node and perform that node's entry."""
        validated = load_plan(plan, allow_cycles=self._allow_cycles)
        if await self._store.get_instance(tenant_id, campaign_id) is not None:
            raise InvalidPayloadError(f"campaign {campaign_id} is already initialized")

        now = self._clock()
        instance = CampaignInstance(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            contact_id=contact_id,
            lead_id=lead_id,
            channel=channel,
            plan_json=validated.to_document(),
            current_node_id=validated.start_node_id,
            node_entered_at=now,
            started_at=now,
        )
        await self._store.create_instance(instance)

        start = validated.node(validated.start_node_id)
        if start.is_terminal:
            await self._store.stop_instance(tenant_id, campaign_id, f"reached stop node {start.id}", now)
            next_action = NextAction()
        else:
            next_action = await self._enter_node(instance, validated, start, now)
        return self._outcome(
            TransitionResult(
                success=True, to_node_id=start.id, next_action=next_action, reason=Reason.INITIALIZED
            ),
            tenant_id, campaign_id, "initialize",
        )

    async def process_transition(
        self,
        *,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        event_type: str,
        current_node_id: str,
        plan: Optional[PlanLike] = None,
        lead_id: Optional[str] = None,
        event_ref: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> TransitionResult:
        """Advance on a real (or out-of-band) event observed at `current_node_id`."""
        instance = await self._store.get_instance(tenant_id, campaign_id)
        if instance is None:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.CAMPAIGN_NOT_FOUND),
                tenant_id, campaign_id, event_type,
            )
        if instance.status != InstanceStatus.ACTIVE:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.CAMPAIGN_NOT_ACTIVE),
                tenant_id, campaign_id, event_type,
            )
        if instance.current_node_id != current_node_id:
            return self._stale(instance, current_node_id, event_type)
        return await self._advance(
            instance, self._plan_for(instance, plan), current_node_id, event_type, event_ref, message_id
        )

    async def process_timeout_transition(
        self,
        *,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        timeout_event_type: str,
        current_node_id: str,
        plan: Optional[PlanLike] = None,
        lead_id: Optional[str] = None,
        original_job_id: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        message_id: Optional[str] = None,
    ) -> TransitionResult:
        """Fire a synthetic timeout event. A contact that already left the node is a no-op."""
        instance = await self._store.get_instance(tenant_id, campaign_id)
        if instance is None:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.CAMPAIGN_NOT_FOUND),
                tenant_id, campaign_id, timeout_event_type,
            )
        if instance.current_node_id != current_node_id:
            return self._stale(instance, current_node_id, timeout_event_type)
        if instance.status != InstanceStatus.ACTIVE:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.CAMPAIGN_NOT_ACTIVE),
                tenant_id, campaign_id, timeout_event_type,
            )
        log.debug(
            "Timeout %s fired for node %s (job=%s scheduled=%s)",
            timeout_event_type, current_node_id, original_job_id,
            scheduled_at.isoformat() if scheduled_at else None,
        )
        return await self._advance(
            instance, self._plan_for(instance, plan), current_node_id, timeout_event_type,
            original_job_id, message_id,
        )

    async def get_current_node_start_time(
        self, tenant_id: str, campaign_id: str, node_id: str
    ) -> Optional[datetime]:
        """When the contact entered `node_id`, taken from transition history."""
        entry = await self._store.latest_entry_transition(tenant_id, campaign_id, node_id)
        if entry is not None:
            return entry.occurred_at
        instance = await self._store.get_instance(tenant_id, campaign_id)
        if instance is not None and instance.plan_json.get("startNodeId") == node_id:
            return instance.started_at
        return None

    async def stop_campaign(self, tenant_id: str, campaign_id: str, reason: str = "stopped_by_operator") -> bool:
        stopped = await self._store.stop_instance(tenant_id, campaign_id, reason, self._clock())
        if stopped:
            await self._ledger.cancel_campaign_actions(tenant_id, campaign_id, reason)
            log.info("Campaign %s stopped: %s", campaign_id, reason, extra={"tenant_id": tenant_id})
        return stopped

    async def get_execution_status(self, tenant_id: str, campaign_id: str) -> Optional[Dict[str, Any]]:
        instance = await self._store.get_instance(tenant_id, campaign_id)
        if instance is None:
            return None
        transitions = await self._store.list_transitions(tenant_id, campaign_id)
        actions = await self._ledger.list_for_campaign(tenant_id, campaign_id)
        return {
            "campaignId": campaign_id,
            "status": instance.status.value,
            "currentNodeId": instance.current_node_id,
            "nodeEnteredAt": instance.node_entered_at.isoformat(),
            "startedAt": instance.started_at.isoformat(),
            "transitions": [t.model_dump(mode="json") for t in transitions],
            "scheduledActions": [a.model_dump(mode="json") for a in actions],
        }

    async def arm_node_timeouts(
        self,
        instance: CampaignInstance,
        node_id: str,
        message_id: str,
        base_time: datetime,
    ) -> List[ScheduledAction]:
        """Arm every `no_*` timer of a node, measured from `base_time` (the send time for send nodes)."""
        plan = self._plan_for(instance, None)
        node = plan.node(node_id)
        if node is None:
            return []
        armed: List[ScheduledAction] = []
        for transition in plan.timeout_transitions(node):
            scheduled_at = calculate_schedule_time(
                plan.timeout_delay(transition) or "PT0S", plan.timezone, plan.quiet_hours, base_time=base_time
            )
            payload = TimeoutJobPayload(
                tenant_id=instance.tenant_id,
                campaign_id=instance.campaign_id,
                contact_id=instance.contact_id,
                lead_id=instance.lead_id,
                node_id=node.id,
                message_id=message_id,
                event_type=transition.on,
                scheduled_at=scheduled_at,
            )
            armed.append(
                await self._ledger.arm(
                    tenant_id=instance.tenant_id,
                    campaign_id=instance.campaign_id,
                    contact_id=instance.contact_id,
                    node_id=node.id,
                    action_type=ActionType.TIMEOUT,
                    scheduled_at=scheduled_at,
                    payload=payload.to_wire(),
                )
            )
        return armed

    def load_instance_plan(self, instance: CampaignInstance) -> CampaignPlan:
        return self._plan_for(instance, None)

    # ---- Internals ----------------------------------------------------------

    def _plan_for(self, instance: CampaignInstance, plan: Optional[PlanLike]) -> CampaignPlan:
        if isinstance(plan, CampaignPlan):
            return plan
        return CampaignPlan.model_validate(plan if plan is not None else instance.plan_json)

    async def _select_transition(
        self, instance: CampaignInstance, candidates: List[Transition], node_id: str
    ) -> Optional[Transition]:
        try:
            node_start = await self.get_current_node_start_time(instance.tenant_id, instance.campaign_id, node_id)
        except Exception as exc:
            log.warning("Node start lookup failed, skipping timing checks: %s", exc)
            return candidates[0]
        now = self._clock()
        for transition in candidates:
            try:
                if is_transition_valid(transition, node_start, now):
                    return transition
            except Exception as exc:
                log.warning("Timing check failed for %s, allowing it: %s", transition.on, exc)
                return transition
        return None

    async def _advance(
        self,
        instance: CampaignInstance,
        plan: CampaignPlan,
        current_node_id: str,
        event_type: str,
        event_ref: Optional[str],
        message_id: Optional[str],
    ) -> TransitionResult:
        tenant_id, campaign_id = instance.tenant_id, instance.campaign_id
        node = plan.node(current_node_id)
        if node is None:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.NODE_NOT_FOUND),
                tenant_id, campaign_id, event_type,
            )

        candidates = [t for t in node.transitions if t.on == event_type]
        if not candidates:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.NO_MATCHING_TRANSITION),
                tenant_id, campaign_id, event_type,
            )

        chosen = await self._select_transition(instance, candidates, current_node_id)
        if chosen is None:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.TIMING_NOT_MET),
                tenant_id, campaign_id, event_type,
            )

        target = plan.node(chosen.to)
        if target is None:
            return self._outcome(
                TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.TARGET_NOT_FOUND),
                tenant_id, campaign_id, event_type,
            )

        now = self._clock()
        moved = await self._store.apply_transition(
            tenant_id,
            campaign_id,
            expected_node_id=current_node_id,
            to_node_id=target.id,
            event_type=event_type,
            event_ref=event_ref,
            occurred_at=now,
            stop=target.is_terminal,
            stop_reason=f"reached stop node {target.id}" if target.is_terminal else None,
        )
        if moved is None:
            return self._stale(instance, current_node_id, event_type)

        if target.is_terminal:
            await self._ledger.cancel_campaign_actions(
                tenant_id, campaign_id, Reason.CAMPAIGN_STOPPED, except_job_id=event_ref
            )
            return self._outcome(
                TransitionResult(
                    success=True, from_node_id=current_node_id, to_node_id=target.id,
                    reason=Reason.CAMPAIGN_STOPPED,
                ),
                tenant_id, campaign_id, event_type,
            )

        next_action = await self._enter_node(instance, plan, target, now, message_id)
        return self._outcome(
            TransitionResult(
                success=True, from_node_id=current_node_id, to_node_id=target.id,
                next_action=next_action, reason=Reason.TRANSITIONED,
            ),
            tenant_id, campaign_id, event_type,
        )

    async def _enter_node(
        self,
        instance: CampaignInstance,
        plan: CampaignPlan,
        node: PlanNode,
        entered_at: datetime,
        message_id: Optional[str] = None,
    ) -> NextAction:
        if node.action == NodeAction.SEND:
            delay = node.schedule.delay if node.schedule and node.schedule.delay else "PT0S"
            send_at = calculate_schedule_time(delay, plan.timezone, plan.quiet_hours, base_time=entered_at)
            payload = SendJobPayload(
                tenant_id=instance.tenant_id,
                campaign_id=instance.campaign_id,
                contact_id=instance.contact_id,
                lead_id=instance.lead_id,
                node_id=node.id,
                channel=node.channel,
            )
            action = await self._ledger.arm(
                tenant_id=instance.tenant_id,
                campaign_id=instance.campaign_id,
                contact_id=instance.contact_id,
                node_id=node.id,
                action_type=ActionType.SEND,
                scheduled_at=send_at,
                payload=payload.to_wire(),
            )
            return NextAction(
                scheduled=True, action_type=ActionType.SEND.value,
                scheduled_at=send_at, scheduled_action_id=action.id,
            )

        if node.action == NodeAction.WAIT:
            # Timers of a wait node refer to the message that led here, if any
            ref = message_id or f"{instance.campaign_id}:{node.id}"
            armed = await self.arm_node_timeouts(instance, node.id, ref, entered_at)
            if not armed:
                return NextAction()
            first = min(armed, key=lambda a: a.scheduled_at)
            return NextAction(
                scheduled=True, action_type=ActionType.TIMEOUT.value,
                scheduled_at=first.scheduled_at, scheduled_action_id=first.id,
            )

        return NextAction()

    def _stale(self, instance: CampaignInstance, current_node_id: str, event_type: str) -> TransitionResult:
        return self._outcome(
            TransitionResult(success=False, from_node_id=current_node_id, reason=Reason.STALE_NODE),
            instance.tenant_id, instance.campaign_id, event_type,
        )

    def _outcome(self, result: TransitionResult, tenant_id: str, campaign_id: str, event_type: str) -> TransitionResult:
        TRANSITIONS.labels(result.reason).inc()
        context = {
            "tenant_id": tenant_id,
            "campaign_id": campaign_id,
            "event_type": event_type,
            "from_node_id": result.from_node_id,
            "to_node_id": result.to_node_id,
            "reason": result.reason,
            "next_action_scheduled": result.next_action.scheduled,
        }
        if result.success:
            log.info(
                "Campaign %s: %s -> %s on %s (%s)", campaign_id, result.from_node_id,
                result.to_node_id, event_type, result.reason, extra=context,
            )
        else:
            log.info(
                "Campaign %s: no transition from %s on %s (%s)", campaign_id,
                result.from_node_id, event_type, result.reason, extra=context,
            )
        return result
