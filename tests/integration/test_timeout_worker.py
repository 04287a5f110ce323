from datetime import timedelta

import pytest

from campaign_engine.common.errors import InvalidPayloadError
from campaign_engine.data.models import ActionType, InstanceStatus, MessageEvent
from campaign_engine.orchestrator.interpreter import Reason


async def _timer(engine, ids, node_id):
    rows = await engine.ledger.list_for_campaign(ids["tenant_id"], ids["campaign_id"])
    [timer] = [a for a in rows if a.action_type == ActionType.TIMEOUT and a.node_id == node_id]
    return timer


async def _node(engine, ids):
    return (await engine.store.get_instance(ids["tenant_id"], ids["campaign_id"])).current_node_id


async def _at_followup(engine, ids, clock):
    """Open the intro, then deliver the followup so its no_click timer is armed."""
    await engine.interpreter.process_transition(
        tenant_id=ids["tenant_id"], campaign_id=ids["campaign_id"], contact_id=ids["contact_id"],
        event_type="opened", current_node_id="email_intro",
    )
    clock.advance(hours=1)
    await engine.queue.run_due()
    return await _timer(engine, ids, "email_followup_1")


class SpyInterpreter:
    def __init__(self, real):
        self._real = real
        self.timeout_calls = []

    def __getattr__(self, name):
        return getattr(self._real, name)

    async def process_timeout_transition(self, **kw):
        self.timeout_calls.append(kw)
        return await self._real.process_timeout_transition(**kw)


@pytest.fixture()
def spy(engine):
    spy = SpyInterpreter(engine.interpreter)
    engine.reconciler._interpreter = spy
    return spy


@pytest.mark.asyncio
async def test_timer_payload_carries_the_sent_message(engine, started_campaign, clock, dispatcher):
    timer = await _timer(engine, started_campaign, "email_intro")
    assert timer.payload["eventType"] == "no_open"
    assert timer.payload["messageId"] == "msg-email_intro-1"
    # measured from the send, not from when the row was read
    assert timer.scheduled_at == clock() + timedelta(hours=72)
    assert dispatcher.sent[0].node_id == "email_intro"


@pytest.mark.asyncio
async def test_real_event_wins_over_timeout(engine, started_campaign, clock, spy):
    ids = started_campaign
    timer = await _timer(engine, ids, "email_intro")
    await engine.store.append_message_event(
        MessageEvent(tenant_id=ids["tenant_id"], message_id="msg-email_intro-1", event_type="open", timestamp=clock())
    )
    clock.advance(hours=72)

    result = await engine.reconciler.process(timer.payload, job_id=timer.bull_job_id)

    assert result["success"] is False
    assert result["reason"] == Reason.REAL_EVENT_EXISTS
    assert spy.timeout_calls == []
    assert await _node(engine, ids) == "email_intro"


@pytest.mark.asyncio
async def test_timeout_fires_when_nothing_happened(engine, started_campaign, clock, spy):
    ids = started_campaign
    timer = await _timer(engine, ids, "email_intro")
    clock.advance(hours=72)

    result = await engine.reconciler.process(timer.payload, job_id=timer.bull_job_id)

    assert result["success"] is True
    assert result["toNodeId"] == "email_followup_1"
    assert spy.timeout_calls[0]["original_job_id"] == timer.bull_job_id
    assert spy.timeout_calls[0]["message_id"] == "msg-email_intro-1"


@pytest.mark.asyncio
async def test_timer_for_a_node_already_left_is_stale(engine, started_campaign, clock):
    ids = started_campaign
    timer = await _timer(engine, ids, "email_intro")
    await _at_followup(engine, ids, clock)
    clock.advance(hours=72)

    result = await engine.reconciler.process(timer.payload)
    assert result["reason"] == Reason.STALE_NODE
    assert await _node(engine, ids) == "email_followup_1"


@pytest.mark.asyncio
async def test_calendar_click_since_node_entry_counts_as_click(engine, started_campaign, clock):
    ids = started_campaign
    timer = await _at_followup(engine, ids, clock)
    clock.advance(hours=2)
    await engine.ingestor.record_calendar_click(
        tenant_id=ids["tenant_id"], campaign_id=ids["campaign_id"], contact_id=ids["contact_id"],
    )
    clock.advance(hours=48)

    result = await engine.reconciler.process(timer.payload)

    assert result["success"] is True
    assert result["reason"] == Reason.CALENDAR_CLICK_FOUND
    assert result["toNodeId"] == "done"
    instance = await engine.store.get_instance(ids["tenant_id"], ids["campaign_id"])
    assert instance.status == InstanceStatus.STOPPED
    [transition] = [
        t for t in await engine.store.list_transitions(ids["tenant_id"], ids["campaign_id"])
        if t.from_node_id == "email_followup_1"
    ]
    assert transition.event_type == "clicked"


@pytest.mark.asyncio
async def test_calendar_click_before_node_entry_is_ignored(engine, started_campaign, clock):
    ids = started_campaign
    await engine.ingestor.record_calendar_click(
        tenant_id=ids["tenant_id"], campaign_id=ids["campaign_id"], contact_id=ids["contact_id"],
        timestamp=clock() - timedelta(minutes=10),
    )
    timer = await _at_followup(engine, ids, clock)
    clock.advance(hours=48)

    result = await engine.reconciler.process(timer.payload)
    assert result["success"] is True
    assert result["reason"] == Reason.CAMPAIGN_STOPPED


@pytest.mark.asyncio
async def test_calendar_lookup_failure_falls_through_to_timeout(engine, started_campaign, clock, monkeypatch):
    ids = started_campaign
    timer = await _at_followup(engine, ids, clock)
    clock.advance(hours=48)

    async def broken(*a, **kw):
        raise ConnectionError("calendar table unavailable")

    monkeypatch.setattr(engine.store, "find_calendar_clicks", broken)
    result = await engine.reconciler.process(timer.payload)
    assert result["reason"] == Reason.CAMPAIGN_STOPPED


@pytest.mark.asyncio
async def test_unknown_campaign_is_missing_data(engine, started_campaign):
    timer = await _timer(engine, started_campaign, "email_intro")
    payload = dict(timer.payload, campaignId="gone")
    result = await engine.reconciler.process(payload)
    assert result["success"] is False
    assert result["reason"] == Reason.MISSING_CAMPAIGN_DATA


@pytest.mark.asyncio
async def test_malformed_payloads_are_rejected(engine, started_campaign):
    timer = await _timer(engine, started_campaign, "email_intro")
    without_message = {k: v for k, v in timer.payload.items() if k != "messageId"}
    with pytest.raises(InvalidPayloadError):
        await engine.reconciler.process(without_message)
    with pytest.raises(InvalidPayloadError):
        await engine.reconciler.process(dict(timer.payload, eventType="opened"))


@pytest.mark.asyncio
async def test_unexpected_errors_are_logged_and_raised(engine, started_campaign, clock, monkeypatch, caplog):
    timer = await _timer(engine, started_campaign, "email_intro")

    async def explode(**kw):
        raise RuntimeError("interpreter crashed")

    monkeypatch.setattr(engine.interpreter, "process_timeout_transition", explode)
    with caplog.at_level("ERROR", logger="outreach.timeout"):
        with pytest.raises(RuntimeError):
            await engine.reconciler.process(timer.payload, job_id="timeout:x:y")
    record = caplog.records[-1]
    assert record.job_id == "timeout:x:y"
    assert "interpreter crashed" in record.getMessage()
