from datetime import datetime, timedelta, timezone

import pytest

from campaign_engine.data.models import ActionStatus, ActionType, InstanceStatus
from campaign_engine.orchestrator.interpreter import Reason
from tests.conftest import T0


async def _instance(engine, ids):
    return await engine.store.get_instance(ids["tenant_id"], ids["campaign_id"])


async def _actions(engine, ids, node_id=None, action_type=None):
    rows = await engine.ledger.list_for_campaign(ids["tenant_id"], ids["campaign_id"])
    return [
        a for a in rows
        if (node_id is None or a.node_id == node_id) and (action_type is None or a.action_type == action_type)
    ]


@pytest.mark.asyncio
async def test_no_open_after_72h_moves_to_followup_and_arms_its_send(engine, fake_ids, plan_doc, clock, dispatcher):
    await engine.interpreter.initialize_campaign(plan=plan_doc, **fake_ids)
    await engine.queue.run_due()
    assert [r.node_id for r in dispatcher.sent] == ["email_intro"]

    # nothing happens for three days
    clock.advance(hours=71, minutes=59)
    await engine.queue.run_due()
    assert (await _instance(engine, fake_ids)).current_node_id == "email_intro"

    clock.advance(minutes=1)
    await engine.queue.run_due()

    instance = await _instance(engine, fake_ids)
    assert instance.current_node_id == "email_followup_1"
    assert instance.status == InstanceStatus.ACTIVE

    [timer] = await _actions(engine, fake_ids, "email_intro", ActionType.TIMEOUT)
    assert timer.status == ActionStatus.COMPLETED

    [followup] = await _actions(engine, fake_ids, "email_followup_1", ActionType.SEND)
    assert followup.status == ActionStatus.PROCESSING
    assert followup.scheduled_at == T0 + timedelta(hours=73)
    assert engine.queue.get_job(followup.bull_job_id) is not None

    [transition] = await engine.store.list_transitions(fake_ids["tenant_id"], fake_ids["campaign_id"])
    assert transition.event_type == "no_open"
    assert transition.event_ref == timer.bull_job_id

    # and the followup goes out an hour later
    clock.advance(hours=1)
    await engine.queue.run_due()
    assert [r.node_id for r in dispatcher.sent] == ["email_intro", "email_followup_1"]


@pytest.mark.asyncio
async def test_real_open_advances_and_the_timer_later_no_ops(engine, started_campaign, clock, dispatcher):
    ids = started_campaign
    clock.advance(hours=3)
    result = await engine.ingestor.ingest_message_event(
        tenant_id=ids["tenant_id"], message_id="msg-email_intro-1", event_type="open",
    )
    assert result.success is True
    assert result.to_node_id == "email_followup_1"

    clock.advance(hours=72)
    await engine.queue.run_due()

    instance = await _instance(engine, ids)
    assert instance.current_node_id == "email_followup_1"
    transitions = await engine.store.list_transitions(ids["tenant_id"], ids["campaign_id"])
    assert [t.event_type for t in transitions] == ["opened"]
    [timer] = await _actions(engine, ids, "email_intro", ActionType.TIMEOUT)
    assert timer.status == ActionStatus.COMPLETED
    assert [r.node_id for r in dispatcher.sent] == ["email_intro", "email_followup_1"]


@pytest.mark.asyncio
async def test_ignored_click_is_recorded_and_still_satisfies_no_click(engine, started_campaign, clock):
    ids = started_campaign
    await engine.ingestor.ingest_message_event(
        tenant_id=ids["tenant_id"], message_id="msg-email_intro-1", event_type="open",
    )
    clock.advance(hours=1)
    await engine.queue.run_due()  # followup sent as msg-email_followup_1-2

    result = await engine.ingestor.ingest_message_event(
        tenant_id=ids["tenant_id"], message_id="msg-email_followup_1-2", event_type="click",
    )
    assert result.success is False
    assert result.reason == Reason.EVENT_IGNORED
    assert (await _instance(engine, ids)).current_node_id == "email_followup_1"

    clock.advance(hours=48)
    await engine.queue.run_due()
    # the real click pre-empts the no_click timer, so the contact stays put
    assert (await _instance(engine, ids)).current_node_id == "email_followup_1"
    [timer] = await _actions(engine, ids, "email_followup_1", ActionType.TIMEOUT)
    assert timer.status == ActionStatus.COMPLETED


@pytest.mark.asyncio
async def test_event_for_unknown_message_is_recorded_only(engine, started_campaign):
    ids = started_campaign
    result = await engine.ingestor.ingest_message_event(
        tenant_id=ids["tenant_id"], message_id="never-sent", event_type="open",
    )
    assert result.reason == Reason.MISSING_CAMPAIGN_DATA
    assert await engine.store.find_message_event(ids["tenant_id"], "never-sent", "open") is not None


@pytest.mark.asyncio
async def test_followup_timeout_reaches_stop_node(engine, started_campaign, clock):
    ids = started_campaign
    clock.advance(hours=72)
    await engine.queue.run_due()  # no_open -> followup
    clock.advance(hours=1)
    await engine.queue.run_due()  # followup sent
    clock.advance(hours=48)
    await engine.queue.run_due()  # no_click -> done

    instance = await _instance(engine, ids)
    assert instance.current_node_id == "done"
    assert instance.status == InstanceStatus.STOPPED
    for action in await _actions(engine, ids):
        assert action.status == ActionStatus.COMPLETED


@pytest.mark.asyncio
async def test_first_send_respects_quiet_hours(engine, fake_ids, plan_doc, clock, dispatcher):
    clock.set(datetime(2025, 5, 12, 23, 30, tzinfo=timezone.utc))
    result = await engine.interpreter.initialize_campaign(plan=plan_doc, **fake_ids)
    assert result.next_action.scheduled_at == datetime(2025, 5, 13, 6, 0, tzinfo=timezone.utc)

    await engine.queue.run_due()
    assert dispatcher.sent == []

    clock.set(datetime(2025, 5, 13, 6, 0, tzinfo=timezone.utc))
    await engine.queue.run_due()
    assert [r.node_id for r in dispatcher.sent] == ["email_intro"]
