# campaign_engine/common/events.py
from __future__ import annotations

from typing import Dict, Iterable, Optional

# Provider vocabulary -> transition vocabulary used in plans
EVENT_NORMALIZATION: Dict[str, str] = {
    "open": "opened",
    "click": "clicked",
    "delivered": "delivered",
    "bounce": "bounce",
    "dropped": "dropped",
    "deferred": "deferred",
    "spam_report": "spam",
    "unsubscribe": "unsubscribe",
}

TIMEOUT_PREFIX = "no_"

# Event fired when an out-of-band click pre-empts a no_click timeout
CLICKED_EVENT = "clicked"


def normalize_event_type(event_type: str) -> str:
    """Map provider vocabulary to plan vocabulary; unknown types pass through."""
    return EVENT_NORMALIZATION.get(event_type, event_type)


def should_trigger_transition(event_type: str, ignored: Iterable[str]) -> bool:
    return event_type not in set(ignored)


def is_timeout_class(event_type: str) -> bool:
    """Any `no_*` event name is treated as timeout driven when arming timers."""
    return bool(event_type) and event_type.startswith(TIMEOUT_PREFIX)


def positive_counterpart(timeout_event: str) -> Optional[str]:
    """no_open -> open, no_click -> click (raw MessageEvent vocabulary)."""
    if not is_timeout_class(timeout_event):
        return None
    return timeout_event[len(TIMEOUT_PREFIX):]
