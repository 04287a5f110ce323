import pytest

from campaign_engine.data.memory_store import InMemoryCampaignStore
from campaign_engine.data.models import ActionStatus, ActionType
from campaign_engine.orchestrator.interpreter import Reason
from campaign_engine.orchestrator.queue.base import JobState
from campaign_engine.orchestrator.queue.memory import InMemoryJobQueue
from campaign_engine.runtime import EngineRuntime
from tests.conftest import make_settings


class DownDispatcher:
    """Delivery collaborator that never succeeds."""

    def __init__(self):
        self.calls = 0

    async def dispatch(self, request):
        self.calls += 1
        raise RuntimeError("smtp relay unavailable")


async def _send_action(engine, ids):
    rows = await engine.ledger.list_for_campaign(ids["tenant_id"], ids["campaign_id"])
    return [a for a in rows if a.action_type == ActionType.SEND][0]


@pytest.mark.asyncio
async def test_send_marks_row_completed_and_records_outbound(engine, started_campaign, dispatcher):
    ids = started_campaign
    send = await _send_action(engine, ids)
    assert send.status == ActionStatus.COMPLETED

    message = await engine.store.get_outbound_message(ids["tenant_id"], "msg-email_intro-1")
    assert message.node_id == "email_intro"
    assert message.contact_id == ids["contact_id"]
    assert dispatcher.sent[0].dedupe_key == message.dedupe_key


@pytest.mark.asyncio
async def test_replayed_send_is_not_dispatched_twice(engine, started_campaign, dispatcher):
    ids = started_campaign
    send = await _send_action(engine, ids)

    result = await engine.sender.process(send.payload)

    assert result["reason"] == Reason.ALREADY_SENT
    assert result["messageId"] == "msg-email_intro-1"
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_send_for_a_node_already_left_is_skipped(engine, started_campaign, dispatcher):
    ids = started_campaign
    send = await _send_action(engine, ids)
    await engine.interpreter.process_transition(
        tenant_id=ids["tenant_id"], campaign_id=ids["campaign_id"], contact_id=ids["contact_id"],
        event_type="opened", current_node_id="email_intro",
    )
    stale = dict(send.payload, nodeId="email_intro")
    result = await engine.sender.process(stale)
    assert result == {"success": False, "reason": Reason.STALE_NODE}
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_send_for_unknown_campaign_reports_missing_data(engine, started_campaign):
    send = await _send_action(engine, started_campaign)
    result = await engine.sender.process(dict(send.payload, campaignId="gone"))
    assert result["reason"] == Reason.MISSING_CAMPAIGN_DATA


@pytest.mark.asyncio
async def test_row_is_failed_only_after_the_last_attempt(fake_ids, plan_doc, clock):
    down = DownDispatcher()
    runtime = EngineRuntime(
        make_settings(),
        store=InMemoryCampaignStore(),
        queue=InMemoryJobQueue(clock=clock),
        dispatcher=down,
        clock=clock,
    )
    runtime.worker.register(runtime.scheduler, concurrency=1)
    await runtime.interpreter.initialize_campaign(plan=plan_doc, **fake_ids)
    send = await _send_action(runtime, fake_ids)

    await runtime.queue.run_due()
    assert (await runtime.ledger.get(send.id)).status == ActionStatus.PROCESSING

    clock.advance(milliseconds=500)
    await runtime.queue.run_due()
    assert (await runtime.ledger.get(send.id)).status == ActionStatus.PROCESSING

    clock.advance(milliseconds=1000)
    await runtime.queue.run_due()

    row = await runtime.ledger.get(send.id)
    assert down.calls == 3
    assert row.status == ActionStatus.FAILED
    assert "smtp relay unavailable" in row.error
    assert runtime.queue.get_job(send.bull_job_id).state == JobState.FAILED


@pytest.mark.asyncio
async def test_malformed_job_fails_its_row_at_once(engine, started_campaign):
    send = await _send_action(engine, started_campaign)
    await engine.store.update_action_status(
        send.id, ActionStatus.PROCESSING, expected=[ActionStatus.COMPLETED], at=send.updated_at
    )
    job_id = await engine.scheduler.enqueue(
        engine.ledger.queue_name, "execute", {"scheduledActionId": send.id}, job_id="execute:broken"
    )
    await engine.queue.run_due()

    assert engine.queue.get_job(job_id).attempts_made == 1
    row = await engine.ledger.get(send.id)
    assert row.status == ActionStatus.FAILED
    assert row.error.startswith("InvalidPayloadError")
