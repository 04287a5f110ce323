from datetime import timedelta

import pytest

from campaign_engine.common.timeutil import epoch_ms
from campaign_engine.data.models import ActionStatus, ActionType, ScheduledAction
from campaign_engine.orchestrator.queue.memory import InMemoryJobQueue
from campaign_engine.orchestrator.recovery import OrphanSweeper, StartupRecovery, recovery_job_id
from campaign_engine.runtime import EngineRuntime
from tests.conftest import make_settings

THRESHOLD = 86400


async def _pending(engine, clock, scheduled_at, action_type=ActionType.SEND, campaign_id="c1"):
    """A ledger row whose queue job never got created (crash between write and enqueue)."""
    action = ScheduledAction(
        tenant_id="t1",
        campaign_id=campaign_id,
        contact_id="p1",
        node_id="email_intro",
        action_type=action_type,
        scheduled_at=scheduled_at,
        payload={"tenantId": "t1", "campaignId": campaign_id, "nodeId": "email_intro"},
        created_at=clock(),
        updated_at=clock(),
    )
    return await engine.store.insert_action(action)


def _recovery(engine, **kw):
    kw.setdefault("expiry_threshold_seconds", THRESHOLD)
    return StartupRecovery(engine.ledger, engine.scheduler, clock=engine.clock, **kw)


@pytest.mark.asyncio
async def test_disabled_recovery_reports_zeros(engine, clock):
    await _pending(engine, clock, clock())
    result = await _recovery(engine, enabled=False).recover()
    assert result.to_dict() == {"total": 0, "recovered": 0, "failed": 0, "expired": 0}
    assert engine.queue.jobs() == []


@pytest.mark.asyncio
async def test_expiry_threshold_is_strict(engine, clock):
    at_threshold = await _pending(engine, clock, clock() - timedelta(seconds=THRESHOLD))
    past_threshold = await _pending(engine, clock, clock() - timedelta(seconds=THRESHOLD + 1))
    future = await _pending(engine, clock, clock() + timedelta(hours=1), ActionType.TIMEOUT)

    result = await _recovery(engine).recover()

    assert result.to_dict() == {"total": 3, "recovered": 2, "failed": 0, "expired": 1}

    expired = await engine.ledger.get(past_threshold.id)
    assert expired.status == ActionStatus.EXPIRED
    assert "expired during recovery" in expired.error
    assert engine.queue.get_job(recovery_job_id(past_threshold)) is None

    rearmed = await engine.ledger.get(at_threshold.id)
    assert rearmed.status == ActionStatus.PROCESSING
    assert rearmed.bull_job_id == recovery_job_id(at_threshold)
    # overdue work runs immediately
    assert engine.queue.get_job(rearmed.bull_job_id).due_at == clock()

    later = engine.queue.get_job(recovery_job_id(future))
    assert later.due_at == future.scheduled_at
    assert later.name == "timeout"


@pytest.mark.asyncio
async def test_recovery_job_id_format(engine, clock):
    action = await _pending(engine, clock, clock())
    assert recovery_job_id(action) == (
        f"recovery:send:c1:{action.id}:{epoch_ms(action.scheduled_at)}"
    )


@pytest.mark.asyncio
async def test_recovered_jobs_carry_recovery_retry_budget(engine, clock):
    action = await _pending(engine, clock, clock())
    await _recovery(engine, job_attempts=4, backoff_ms=1000).recover()

    job = engine.queue.get_job(recovery_job_id(action))
    assert job.opts.attempts == 4
    assert job.opts.backoff.delay_ms == 1000
    assert job.payload["scheduledActionId"] == action.id


@pytest.mark.asyncio
async def test_second_pass_does_not_duplicate_jobs(engine, clock):
    action = await _pending(engine, clock, clock() + timedelta(minutes=30))
    recovery = _recovery(engine)
    await recovery.recover()

    # the row is processing now, so a second pass finds nothing
    assert (await recovery.recover()).total == 0

    # even if the row were pending again, the same job id is reused
    await engine.store.update_action_status(
        action.id, ActionStatus.PENDING, expected=[ActionStatus.PROCESSING], at=clock()
    )
    again = await recovery.recover()
    assert again.recovered == 1
    assert len([j for j in engine.queue.jobs() if j.id.startswith("recovery:")]) == 1


@pytest.mark.asyncio
async def test_one_bad_row_does_not_abort_the_pass(engine, clock, monkeypatch):
    good = [await _pending(engine, clock, clock(), campaign_id=f"c{n}") for n in range(4)]
    bad = await _pending(engine, clock, clock(), campaign_id="cursed")
    real_enqueue = engine.scheduler.enqueue

    async def flaky_enqueue(queue, job_name, payload, **kw):
        if payload["campaignId"] == "cursed":
            raise ConnectionError("broker reset")
        return await real_enqueue(queue, job_name, payload, **kw)

    monkeypatch.setattr(engine.scheduler, "enqueue", flaky_enqueue)
    result = await _recovery(engine, batch_size=2).recover()

    assert result.to_dict() == {"total": 5, "recovered": 4, "failed": 1, "expired": 0}
    assert (await engine.ledger.get(bad.id)).status == ActionStatus.PENDING
    for action in good:
        assert (await engine.ledger.get(action.id)).status == ActionStatus.PROCESSING


@pytest.mark.asyncio
async def test_orphan_sweep_only_takes_rows_past_grace(engine, clock):
    old = await _pending(engine, clock, clock() + timedelta(hours=1))
    clock.advance(seconds=120)
    fresh = await _pending(engine, clock, clock() + timedelta(hours=1))

    sweeper = OrphanSweeper(_recovery(engine), interval_seconds=0, grace_seconds=60, clock=clock)
    result = await sweeper.sweep_once()

    assert result.recovered == 1
    assert (await engine.ledger.get(old.id)).status == ActionStatus.PROCESSING
    assert (await engine.ledger.get(fresh.id)).status == ActionStatus.PENDING


@pytest.mark.asyncio
async def test_restart_rearms_send_lost_between_write_and_enqueue(
    engine, fake_ids, plan_doc, clock, dispatcher
):
    # broker is gone when the campaign starts: the row is written but never enqueued
    await engine.queue.close()
    await engine.interpreter.initialize_campaign(plan=plan_doc, **fake_ids)
    [send] = await engine.ledger.list_pending()
    assert send.bull_job_id is None

    clock.advance(minutes=5)
    restarted = EngineRuntime(
        make_settings(),
        store=engine.store,
        queue=InMemoryJobQueue(clock=clock, tick_seconds=60),
        dispatcher=dispatcher,
        clock=clock,
    )
    await restarted.start()
    try:
        assert restarted.last_recovery.to_dict() == {"total": 1, "recovered": 1, "failed": 0, "expired": 0}
        await restarted.queue.run_due()
    finally:
        await restarted.stop()

    assert [r.node_id for r in dispatcher.sent] == ["email_intro"]
    row = await restarted.ledger.get(send.id)
    assert row.status == ActionStatus.COMPLETED
    assert row.bull_job_id.startswith("recovery:send:")
