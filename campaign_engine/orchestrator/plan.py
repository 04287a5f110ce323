# campaign_engine/orchestrator/plan.py

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from campaign_engine.common.errors import PlanValidationError
from campaign_engine.common.events import is_timeout_class
from campaign_engine.policy.schedule_time import (
    QuietHours,
    is_valid_duration,
    is_valid_time_format,
    is_valid_timezone,
)

log = logging.getLogger("outreach.interpreter")


class NodeAction(str, Enum):
    SEND = "send"
    WAIT = "wait"
    STOP = "stop"


class _PlanModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Transition(_PlanModel):
    """
    Edge taken on a named event.

    - `within`: deadline for a positive event ("clicked within PT24H").
    - `after`: delay before a timeout event fires ("no_click after PT24H").
    """

    on: str
    to: str
    within: Optional[str] = None
    after: Optional[str] = None


class NodeSchedule(_PlanModel):
    delay: Optional[str] = None


class PlanNode(_PlanModel):
    id: str
    channel: str = "email"
    action: NodeAction
    schedule: Optional[NodeSchedule] = None
    transitions: List[Transition] = Field(default_factory=list)
    content: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.action == NodeAction.STOP


class PlanDefaults(_PlanModel):
    timers: Dict[str, str] = Field(default_factory=dict)


class CampaignPlan(_PlanModel):
    """Declarative per-contact state machine. Immutable once attached to an instance."""

    version: Union[str, int] = "1"
    timezone: str = "UTC"
    quiet_hours: Optional[QuietHours] = Field(default=None, alias="quietHours")
    defaults: PlanDefaults = Field(default_factory=PlanDefaults)
    start_node_id: str = Field(..., alias="startNodeId")
    nodes: List[PlanNode]
    allow_cycles: bool = Field(default=False, alias="allowCycles")

    # --- Lookups -------------------------------------------------------------

    def node(self, node_id: str) -> Optional[PlanNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def transitions_for(self, node_id: str, event_type: str) -> List[Transition]:
        n = self.node(node_id)
        if n is None:
            return []
        return [t for t in n.transitions if t.on == event_type]

    def timeout_transitions(self, node: PlanNode) -> List[Transition]:
        return [t for t in node.transitions if is_timeout_class(t.on)]

    def timeout_delay(self, transition: Transition) -> Optional[str]:
        return transition.after or transition.within

    def default_timer(self, event_type: str) -> Optional[str]:
        return self.defaults.timers.get(event_type) or self.defaults.timers.get(f"{event_type}_after")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ----------------------------
# Load-time validation
# ----------------------------

def _find_cycle(plan: CampaignPlan) -> Optional[List[str]]:
    edges = {n.id: [t.to for t in n.transitions] for n in plan.nodes}
    white, grey, black = 0, 1, 2
    color = {node_id: white for node_id in edges}
    path: List[str] = []

    def visit(node_id: str) -> Optional[List[str]]:
        color[node_id] = grey
        path.append(node_id)
        for target in edges.get(node_id, []):
            if target not in color:
                continue
            if color[target] == grey:
                return path[path.index(target):] + [target]
            if color[target] == white:
                found = visit(target)
                if found:
                    return found
        path.pop()
        color[node_id] = black
        return None

    for node_id in [plan.start_node_id] + list(edges):
        if color.get(node_id) == white:
            found = visit(node_id)
            if found:
                return found
    return None


def validate_plan(plan: CampaignPlan, allow_cycles: bool = False) -> List[str]:
    """Return every structural problem found in the plan (empty list when valid)."""
    problems: List[str] = []
    ids = [n.id for n in plan.nodes]
    known = set(ids)

    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        problems.append(f"duplicate node ids: {dupes}")
    if plan.start_node_id not in known:
        problems.append(f"startNodeId {plan.start_node_id!r} does not reference a node")
    if not is_valid_timezone(plan.timezone):
        problems.append(f"unknown timezone {plan.timezone!r}")
    if plan.quiet_hours is not None:
        for label, value in (("start", plan.quiet_hours.start), ("end", plan.quiet_hours.end)):
            if not is_valid_time_format(value):
                problems.append(f"quietHours.{label} {value!r} is not HH:MM")
    for event, value in plan.defaults.timers.items():
        if not is_valid_duration(value):
            problems.append(f"defaults.timers.{event} {value!r} is not a valid duration")

    for node in plan.nodes:
        where = f"node {node.id!r}"
        if node.is_terminal and node.transitions:
            problems.append(f"{where}: stop nodes cannot have transitions")
        if not node.is_terminal and not node.transitions:
            problems.append(f"{where}: non-terminal node needs at least one transition")
        if node.schedule and node.schedule.delay and not is_valid_duration(node.schedule.delay):
            problems.append(f"{where}: schedule.delay {node.schedule.delay!r} is not a valid duration")
        for t in node.transitions:
            edge = f"{where} on {t.on!r}"
            if t.to not in known:
                problems.append(f"{edge}: target {t.to!r} does not exist")
            if t.within and t.after:
                problems.append(f"{edge}: only one of within/after may be set")
            elif not t.within and not t.after:
                if is_timeout_class(t.on):
                    problems.append(f"{edge}: timeout transition has no delay and no default timer")
                else:
                    problems.append(f"{edge}: one of within/after is required")
            for label, value in (("within", t.within), ("after", t.after)):
                if value and not is_valid_duration(value):
                    problems.append(f"{edge}: {label} {value!r} is not a valid duration")

    if not problems:
        cycle = _find_cycle(plan)
        if cycle:
            if allow_cycles or plan.allow_cycles:
                log.warning("Plan contains a cycle (allowed): %s", " -> ".join(cycle))
            else:
                problems.append(f"plan contains a cycle: {' -> '.join(cycle)}")
    return problems


def apply_default_timers(plan: CampaignPlan) -> CampaignPlan:
    """Fill `after` on timeout transitions that carry no duration from `defaults.timers`."""
    nodes = []
    changed = False
    for node in plan.nodes:
        transitions = []
        for t in node.transitions:
            default = plan.default_timer(t.on) if is_timeout_class(t.on) else None
            if default and not t.within and not t.after:
                t = t.model_copy(update={"after": default})
                changed = True
            transitions.append(t)
        nodes.append(node.model_copy(update={"transitions": transitions}))
    return plan.model_copy(update={"nodes": nodes}) if changed else plan


def load_plan(document: Union[Dict[str, Any], CampaignPlan], allow_cycles: bool = False) -> CampaignPlan:
    """
    Parse and validate a plan document. Raises PlanValidationError listing all problems.

    Every transition ends up with exactly one of `within`/`after`; timeout transitions
    that omit both take their duration from `defaults.timers`.
    """
    if isinstance(document, CampaignPlan):
        plan = document
    else:
        try:
            plan = CampaignPlan.model_validate(document)
        except ValidationError as ve:
            raise PlanValidationError(
                [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in ve.errors()]
            ) from ve
    plan = apply_default_timers(plan)
    problems = validate_plan(plan, allow_cycles=allow_cycles)
    if problems:
        raise PlanValidationError(problems)
    return plan
