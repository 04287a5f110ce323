# tests/conftest.py
# --- Windows: ensure a selector loop (asyncpg DNS resolution needs it)
import sys
import asyncio

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from faker import Faker

# --- Ensure project root is importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from campaign_engine.config import Settings
from campaign_engine.data.memory_store import InMemoryCampaignStore
from campaign_engine.orchestrator.queue.memory import InMemoryJobQueue
from campaign_engine.orchestrator.send_worker import SendRequest
from campaign_engine.runtime import EngineRuntime

# Monday noon UTC, far from any quiet window used in the tests
T0 = datetime(2025, 5, 12, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingDispatcher:
    """Stands in for the delivery collaborator; message ids are predictable."""

    def __init__(self):
        self.sent: List[SendRequest] = []

    async def dispatch(self, request: SendRequest) -> str:
        self.sent.append(request)
        return f"msg-{request.node_id}-{len(self.sent)}"


def make_settings(**overrides: Any) -> Settings:
    base: Dict[str, Any] = dict(
        ENVIRONMENT="test",
        DATABASE_URL="",
        QUEUE_BACKEND="memory",
        RECOVERY_ENABLED=True,
        ORPHAN_SWEEP_INTERVAL_SECONDS=0,
        WORKER_DRAIN_TIMEOUT_SECONDS=1,
        SHUTDOWN_TIMEOUT_SECONDS=2,
    )
    base.update(overrides)
    return Settings(_env_file=None, **base)


def intro_followup_plan(**extra: Any) -> Dict[str, Any]:
    """email_intro --no_open after PT72H--> email_followup_1 --no_click (default timer)--> done."""
    plan = {
        "version": 1,
        "timezone": "UTC",
        "quietHours": {"start": "22:00", "end": "06:00"},
        "defaults": {"timers": {"no_click": "PT48H"}},
        "startNodeId": "email_intro",
        "nodes": [
            {
                "id": "email_intro",
                "channel": "email",
                "action": "send",
                "transitions": [
                    {"on": "opened", "to": "email_followup_1", "within": "PT72H"},
                    {"on": "no_open", "to": "email_followup_1", "after": "PT72H"},
                ],
            },
            {
                "id": "email_followup_1",
                "channel": "email",
                "action": "send",
                "schedule": {"delay": "PT1H"},
                "transitions": [
                    {"on": "clicked", "to": "done", "within": "P7D"},
                    {"on": "no_click", "to": "done"},
                ],
            },
            {"id": "done", "channel": "email", "action": "stop"},
        ],
    }
    plan.update(extra)
    return plan


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def fake_ids():
    f = Faker()
    return dict(
        tenant_id=f"tenant-{f.uuid4()[:8]}",
        campaign_id=f"camp-{f.uuid4()[:8]}",
        contact_id=f"contact-{f.uuid4()[:8]}",
        lead_id=f"lead-{f.uuid4()[:8]}",
    )


@pytest.fixture()
def plan_doc() -> Dict[str, Any]:
    return intro_followup_plan()


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def engine(settings, clock, dispatcher) -> EngineRuntime:
    """Fully wired engine on in-memory store and queue; not started (no ticker)."""
    runtime = EngineRuntime(
        settings,
        store=InMemoryCampaignStore(),
        queue=InMemoryJobQueue(clock=clock),
        dispatcher=dispatcher,
        clock=clock,
    )
    runtime.worker.register(runtime.scheduler, concurrency=settings.WORKER_CONCURRENCY)
    return runtime


@pytest_asyncio.fixture()
async def started_campaign(engine, fake_ids, plan_doc):
    """Campaign initialized at email_intro with its first send already delivered."""
    await engine.interpreter.initialize_campaign(plan=plan_doc, **fake_ids)
    await engine.queue.run_due()
    return fake_ids
