# campaign_engine/orchestrator/queue/temporal_workflow.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from campaign_engine.orchestrator.queue.retry_policies import (
        Backoff,
        JobOptions,
        temporal_retry_policy,
    )

RUN_JOB_ACTIVITY = "run_job"


@dataclass
class JobEnvelope:
    """Wire form of a queued job; the workflow id is the job id."""

    job_id: str
    queue: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_ms: int = 500
    timeout_seconds: int = 300
    enqueued_at: str = ""
    delay_ms: int = 0

    def options(self) -> JobOptions:
        return JobOptions(
            job_id=self.job_id,
            attempts=self.attempts,
            backoff=Backoff(self.backoff_type, self.backoff_ms),  # type: ignore[arg-type]
            timeout_seconds=self.timeout_seconds,
        )


@workflow.defn(name="DelayedJob")
class DelayedJobWorkflow:
    """
    One durable job. The delay is a workflow timer, so it survives worker restarts
    and a second enqueue of the same id during the delay is rejected as a duplicate.
    Retries are the activity's retry policy.
    """

    @workflow.run
    async def run(self, envelope: JobEnvelope) -> Any:
        if envelope.delay_ms > 0:
            await workflow.sleep(timedelta(milliseconds=envelope.delay_ms))
        return await workflow.execute_activity(
            RUN_JOB_ACTIVITY,
            envelope,
            start_to_close_timeout=timedelta(seconds=envelope.timeout_seconds),
            retry_policy=temporal_retry_policy(envelope.options()),
        )
