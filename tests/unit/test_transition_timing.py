from datetime import datetime, timedelta, timezone

from campaign_engine.common.events import (
    is_timeout_class,
    normalize_event_type,
    positive_counterpart,
    should_trigger_transition,
)
from campaign_engine.orchestrator.interpreter import is_transition_valid
from campaign_engine.orchestrator.plan import Transition

START = datetime(2025, 5, 12, 12, 0, tzinfo=timezone.utc)


def _at(**kw):
    return START + timedelta(**kw)


def test_within_is_an_inclusive_deadline():
    t = Transition(on="opened", to="next", within="PT24H")
    assert is_transition_valid(t, START, _at(hours=1))
    assert is_transition_valid(t, START, _at(hours=24))
    assert not is_transition_valid(t, START, _at(hours=24, seconds=1))


def test_after_is_an_inclusive_minimum_wait():
    t = Transition(on="replied", to="next", after="PT2H")
    assert not is_transition_valid(t, START, _at(hours=1, minutes=59))
    assert is_transition_valid(t, START, _at(hours=2))


def test_timeout_transitions_always_wait_their_window():
    # a timeout expressed with `within` still must not fire early
    t = Transition(on="no_click", to="next", within="PT48H")
    assert not is_transition_valid(t, START, _at(hours=47))
    assert is_transition_valid(t, START, _at(hours=48))


def test_unconstrained_or_unknown_start_always_passes():
    assert is_transition_valid(Transition(on="opened", to="x"), START, _at(days=30))
    assert is_transition_valid(Transition(on="opened", to="x", within="PT1H"), None, _at(days=30))


def test_provider_vocabulary_is_normalized():
    assert normalize_event_type("open") == "opened"
    assert normalize_event_type("click") == "clicked"
    assert normalize_event_type("spam_report") == "spam"
    assert normalize_event_type("replied") == "replied"


def test_timeout_event_helpers():
    assert is_timeout_class("no_open") and is_timeout_class("no_click")
    assert not is_timeout_class("")
    assert is_timeout_class("no_reply")
    assert not is_timeout_class("opened")
    assert positive_counterpart("no_open") == "open"
    assert positive_counterpart("no_click") == "click"
    assert positive_counterpart("opened") is None


def test_ignored_events_do_not_trigger():
    assert not should_trigger_transition("click", ["click"])
    assert should_trigger_transition("open", ["click"])
