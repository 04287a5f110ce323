# campaign_engine/data/pg_store.py
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import List, Optional, Sequence

import asyncpg
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from campaign_engine.common.errors import InvalidPayloadError, StoreUnavailableError
from campaign_engine.data.models import (
    ActionStatus,
    CalendarClick,
    CampaignInstance,
    CampaignTransition,
    MessageEvent,
    OutboundMessage,
    ScheduledAction,
)
from campaign_engine.data.store import CampaignStore

log = logging.getLogger("outreach.store")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS campaign_instances (
    tenant_id        text NOT NULL,
    campaign_id      text NOT NULL,
    contact_id       text NOT NULL,
    lead_id          text,
    channel          text NOT NULL,
    plan_json        jsonb NOT NULL,
    status           text NOT NULL,
    current_node_id  text NOT NULL,
    node_entered_at  timestamptz NOT NULL,
    started_at       timestamptz NOT NULL,
    stopped_at       timestamptz,
    stop_reason      text,
    PRIMARY KEY (tenant_id, campaign_id)
);

CREATE TABLE IF NOT EXISTS campaign_transitions (
    id           text PRIMARY KEY,
    tenant_id    text NOT NULL,
    campaign_id  text NOT NULL,
    from_node_id text NOT NULL,
    to_node_id   text NOT NULL,
    event_type   text NOT NULL,
    event_ref    text,
    occurred_at  timestamptz NOT NULL
);
CREATE INDEX IF NOT EXISTS campaign_transitions_entry_idx
    ON campaign_transitions (tenant_id, campaign_id, to_node_id, occurred_at DESC);

CREATE TABLE IF NOT EXISTS scheduled_actions (
    id            text PRIMARY KEY,
    tenant_id     text NOT NULL,
    campaign_id   text NOT NULL,
    contact_id    text NOT NULL,
    node_id       text NOT NULL,
    action_type   text NOT NULL,
    scheduled_at  timestamptz NOT NULL,
    status        text NOT NULL,
    bull_job_id   text,
    payload       jsonb NOT NULL DEFAULT '{}'::jsonb,
    error         text,
    created_at    timestamptz NOT NULL,
    updated_at    timestamptz NOT NULL
);
CREATE INDEX IF NOT EXISTS scheduled_actions_status_idx
    ON scheduled_actions (status, scheduled_at);

CREATE TABLE IF NOT EXISTS message_events (
    id          text PRIMARY KEY,
    tenant_id   text NOT NULL,
    message_id  text NOT NULL,
    event_type  text NOT NULL,
    timestamp   timestamptz NOT NULL,
    payload     jsonb NOT NULL DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS message_events_lookup_idx
    ON message_events (tenant_id, message_id, event_type);

CREATE TABLE IF NOT EXISTS outbound_messages (
    message_id   text NOT NULL,
    tenant_id    text NOT NULL,
    campaign_id  text NOT NULL,
    contact_id   text NOT NULL,
    node_id      text NOT NULL,
    channel      text NOT NULL,
    dedupe_key   text NOT NULL,
    sent_at      timestamptz NOT NULL,
    PRIMARY KEY (tenant_id, message_id),
    UNIQUE (tenant_id, dedupe_key)
);

CREATE TABLE IF NOT EXISTS calendar_clicks (
    id           text PRIMARY KEY,
    tenant_id    text NOT NULL,
    campaign_id  text NOT NULL,
    node_id      text,
    contact_id   text NOT NULL,
    lead_id      text,
    timestamp    timestamptz NOT NULL
);
CREATE INDEX IF NOT EXISTS calendar_clicks_lookup_idx
    ON calendar_clicks (tenant_id, campaign_id, timestamp DESC);
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PgCampaignStore(CampaignStore):
    """asyncpg-backed store. Compare-and-set is a conditional UPDATE ... RETURNING."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    @retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.3, min=0.2, max=5),
        retry=retry_if_exception_type((OSError, asyncpg.CannotConnectNowError)),
    )
    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            dsn=self._dsn, min_size=self._min_size, max_size=self._max_size, init=_init_connection
        )

    async def connect(self) -> None:
        if self._pool is None:
            self._pool = await self._create_pool()
            log.info("Connected asyncpg pool (min=%d max=%d)", self._min_size, self._max_size)

    async def ensure_schema(self) -> None:
        async with self._acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("Closed asyncpg pool")

    def _acquire(self):
        if self._pool is None:
            raise StoreUnavailableError("store is not connected")
        return self._pool.acquire()

    async def _fetch(self, sql: str, *args) -> List[dict]:
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
            return [dict(r) for r in rows]

    async def _fetchrow(self, sql: str, *args) -> Optional[dict]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(sql, *args)
            return dict(row) if row else None

    # ---- Campaign instances -------------------------------------------------

    async def create_instance(self, instance: CampaignInstance) -> CampaignInstance:
        try:
            await self._fetchrow(
                """
                INSERT INTO campaign_instances (tenant_id, campaign_id, contact_id, lead_id, channel,
                    plan_json, status, current_node_id, node_entered_at, started_at)
                VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10)
                """,
                instance.tenant_id, instance.campaign_id, instance.contact_id, instance.lead_id,
                instance.channel, instance.plan_json, instance.status.value, instance.current_node_id,
                instance.node_entered_at, instance.started_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise InvalidPayloadError(f"campaign {instance.campaign_id} is already initialized") from e
        return instance

    async def get_instance(self, tenant_id: str, campaign_id: str) -> Optional[CampaignInstance]:
        row = await self._fetchrow(
            "SELECT * FROM campaign_instances WHERE tenant_id=$1 AND campaign_id=$2",
            tenant_id, campaign_id,
        )
        return CampaignInstance(**row) if row else None

    async def apply_transition(
        self,
        tenant_id: str,
        campaign_id: str,
        *,
        expected_node_id: str,
        to_node_id: str,
        event_type: str,
        event_ref: Optional[str],
        occurred_at: datetime,
        stop: bool = False,
        stop_reason: Optional[str] = None,
    ) -> Optional[CampaignTransition]:
        transition = CampaignTransition(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            from_node_id=expected_node_id,
            to_node_id=to_node_id,
            event_type=event_type,
            event_ref=event_ref,
            occurred_at=occurred_at,
        )
        async with self._acquire() as conn:
            async with conn.transaction():
                moved = await conn.fetchrow(
                    """
                    UPDATE campaign_instances
                       SET current_node_id = $4,
                           node_entered_at = $5,
                           status = CASE WHEN $6 THEN 'stopped' ELSE status END,
                           stopped_at = CASE WHEN $6 THEN $5 ELSE stopped_at END,
                           stop_reason = CASE WHEN $6 THEN $7 ELSE stop_reason END
                     WHERE tenant_id = $1 AND campaign_id = $2
                       AND current_node_id = $3 AND status = 'active'
                    RETURNING campaign_id
                    """,
                    tenant_id, campaign_id, expected_node_id, to_node_id, occurred_at, stop, stop_reason,
                )
                if moved is None:
                    return None
                await conn.execute(
                    """
                    INSERT INTO campaign_transitions (id, tenant_id, campaign_id, from_node_id,
                        to_node_id, event_type, event_ref, occurred_at)
                    VALUES ($1,$2,$3,$4,$5,$6,$7,$8)
                    """,
                    transition.id, tenant_id, campaign_id, expected_node_id, to_node_id,
                    event_type, event_ref, occurred_at,
                )
        return transition

    async def stop_instance(self, tenant_id: str, campaign_id: str, reason: str, at: datetime) -> bool:
        row = await self._fetchrow(
            """
            UPDATE campaign_instances SET status='stopped', stopped_at=$3, stop_reason=$4
             WHERE tenant_id=$1 AND campaign_id=$2 AND status='active'
            RETURNING campaign_id
            """,
            tenant_id, campaign_id, at, reason,
        )
        return row is not None

    async def list_transitions(self, tenant_id: str, campaign_id: str) -> List[CampaignTransition]:
        rows = await self._fetch(
            "SELECT * FROM campaign_transitions WHERE tenant_id=$1 AND campaign_id=$2 ORDER BY occurred_at",
            tenant_id, campaign_id,
        )
        return [CampaignTransition(**r) for r in rows]

    async def latest_entry_transition(
        self, tenant_id: str, campaign_id: str, node_id: str
    ) -> Optional[CampaignTransition]:
        row = await self._fetchrow(
            """
            SELECT * FROM campaign_transitions
             WHERE tenant_id=$1 AND campaign_id=$2 AND to_node_id=$3
             ORDER BY occurred_at DESC LIMIT 1
            """,
            tenant_id, campaign_id, node_id,
        )
        return CampaignTransition(**row) if row else None

    # ---- Scheduled-action ledger -------------------------------------------

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        await self._fetchrow(
            """
            INSERT INTO scheduled_actions (id, tenant_id, campaign_id, contact_id, node_id,
                action_type, scheduled_at, status, bull_job_id, payload, error, created_at, updated_at)
            VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13)
            """,
            action.id, action.tenant_id, action.campaign_id, action.contact_id, action.node_id,
            action.action_type.value, action.scheduled_at, action.status.value, action.bull_job_id,
            action.payload, action.error, action.created_at, action.updated_at,
        )
        return action

    async def get_action(self, action_id: str) -> Optional[ScheduledAction]:
        row = await self._fetchrow("SELECT * FROM scheduled_actions WHERE id=$1", action_id)
        return ScheduledAction(**row) if row else None

    async def update_action_status(
        self,
        action_id: str,
        status: ActionStatus,
        *,
        expected: Sequence[ActionStatus],
        at: datetime,
        bull_job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[ScheduledAction]:
        row = await self._fetchrow(
            """
            UPDATE scheduled_actions
               SET status=$2, updated_at=$4,
                   bull_job_id=COALESCE($5, bull_job_id),
                   error=COALESCE($6, error)
             WHERE id=$1 AND status = ANY($3::text[])
            RETURNING *
            """,
            action_id, status.value, [s.value for s in expected], at, bull_job_id, error,
        )
        return ScheduledAction(**row) if row else None

    async def list_actions_by_status(
        self, status: ActionStatus, created_before: Optional[datetime] = None
    ) -> List[ScheduledAction]:
        rows = await self._fetch(
            """
            SELECT * FROM scheduled_actions
             WHERE status=$1 AND ($2::timestamptz IS NULL OR created_at < $2)
             ORDER BY scheduled_at
            """,
            status.value, created_before,
        )
        return [ScheduledAction(**r) for r in rows]

    async def list_campaign_actions(self, tenant_id: str, campaign_id: str) -> List[ScheduledAction]:
        rows = await self._fetch(
            "SELECT * FROM scheduled_actions WHERE tenant_id=$1 AND campaign_id=$2 ORDER BY scheduled_at",
            tenant_id, campaign_id,
        )
        return [ScheduledAction(**r) for r in rows]

    # ---- Real events and outbound messages ---------------------------------

    async def append_message_event(self, event: MessageEvent) -> MessageEvent:
        await self._fetchrow(
            """
            INSERT INTO message_events (id, tenant_id, message_id, event_type, timestamp, payload)
            VALUES ($1,$2,$3,$4,$5,$6)
            """,
            event.id, event.tenant_id, event.message_id, event.event_type, event.timestamp, event.payload,
        )
        return event

    async def find_message_event(
        self, tenant_id: str, message_id: str, event_type: str
    ) -> Optional[MessageEvent]:
        row = await self._fetchrow(
            """
            SELECT * FROM message_events
             WHERE tenant_id=$1 AND message_id=$2 AND event_type=$3
             ORDER BY timestamp LIMIT 1
            """,
            tenant_id, message_id, event_type,
        )
        return MessageEvent(**row) if row else None

    async def save_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        await self._fetchrow(
            """
            INSERT INTO outbound_messages (message_id, tenant_id, campaign_id, contact_id, node_id,
                channel, dedupe_key, sent_at)
            VALUES ($1,$2,$3,$4,$5,$6,$7,$8)
            ON CONFLICT (tenant_id, dedupe_key) DO NOTHING
            """,
            message.message_id, message.tenant_id, message.campaign_id, message.contact_id,
            message.node_id, message.channel, message.dedupe_key, message.sent_at,
        )
        return message

    async def get_outbound_message(self, tenant_id: str, message_id: str) -> Optional[OutboundMessage]:
        row = await self._fetchrow(
            "SELECT * FROM outbound_messages WHERE tenant_id=$1 AND message_id=$2",
            tenant_id, message_id,
        )
        return OutboundMessage(**row) if row else None

    async def find_outbound_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> Optional[OutboundMessage]:
        row = await self._fetchrow(
            "SELECT * FROM outbound_messages WHERE tenant_id=$1 AND dedupe_key=$2",
            tenant_id, dedupe_key,
        )
        return OutboundMessage(**row) if row else None

    # ---- Out-of-band signals -----------------------------------------------

    async def record_calendar_click(self, click: CalendarClick) -> CalendarClick:
        await self._fetchrow(
            """
            INSERT INTO calendar_clicks (id, tenant_id, campaign_id, node_id, contact_id, lead_id, timestamp)
            VALUES ($1,$2,$3,$4,$5,$6,$7)
            """,
            click.id, click.tenant_id, click.campaign_id, click.node_id, click.contact_id,
            click.lead_id, click.timestamp,
        )
        return click

    async def find_calendar_clicks(
        self,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        lead_id: Optional[str],
        since: datetime,
        until: datetime,
    ) -> List[CalendarClick]:
        rows = await self._fetch(
            """
            SELECT * FROM calendar_clicks
             WHERE tenant_id=$1 AND campaign_id=$2
               AND (contact_id=$3 OR ($4::text IS NOT NULL AND lead_id=$4))
               AND timestamp >= $5 AND timestamp <= $6
             ORDER BY timestamp DESC
            """,
            tenant_id, campaign_id, contact_id, lead_id, since, until,
        )
        return [CalendarClick(**r) for r in rows]
