# campaign_engine/orchestrator/queue/temporal.py
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import activity
from temporalio.client import Client
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import ApplicationError, WorkflowAlreadyStartedError
from temporalio.worker import Worker

from campaign_engine.common.errors import QueueClosedError, is_unrecoverable
from campaign_engine.common.timeutil import parse_timestamp, utcnow
from campaign_engine.orchestrator.queue.base import Job, JobQueue, JobState, WorkerSpec
from campaign_engine.orchestrator.queue.retry_policies import JobOptions
from campaign_engine.orchestrator.queue.temporal_workflow import (
    RUN_JOB_ACTIVITY,
    DelayedJobWorkflow,
    JobEnvelope,
)

log = logging.getLogger("outreach.queue")


class _JobActivity:
    """Binds one queue's processor to the `run_job` activity."""

    def __init__(self, backend: "TemporalJobQueue", spec: WorkerSpec) -> None:
        self._backend = backend
        self._spec = spec

    @activity.defn(name=RUN_JOB_ACTIVITY)
    async def run_job(self, envelope: JobEnvelope) -> Any:
        info = activity.info()
        enqueued = parse_timestamp(envelope.enqueued_at) if envelope.enqueued_at else utcnow()
        job = Job(
            id=envelope.job_id,
            queue=envelope.queue,
            name=envelope.name,
            payload=envelope.payload,
            opts=envelope.options(),
            enqueued_at=enqueued,
            due_at=utcnow(),
            attempts_made=info.attempt,
            state=JobState.ACTIVE,
        )
        try:
            result = await self._spec.processor(job)
        except Exception as exc:
            job.failed_reason = str(exc) or exc.__class__.__name__
            final = is_unrecoverable(exc) or job.is_final_attempt
            job.state = JobState.FAILED if final else JobState.DELAYED
            await self._backend._emit_failed(job, exc, final)
            if is_unrecoverable(exc):
                raise ApplicationError(str(exc), type=exc.__class__.__name__, non_retryable=True) from exc
            raise
        job.state = JobState.COMPLETED
        job.result = result
        await self._backend._emit_completed(job, result)
        return result


class TemporalJobQueue(JobQueue):
    """
    Durable backend: every job is a `DelayedJobWorkflow` whose workflow id is the job id.

    - delay -> a durable timer at the top of the workflow
    - dedupe -> `WorkflowAlreadyStartedError` on a live (or completed) id is a no-op
    - worker pool -> one Temporal Worker per queue, activity concurrency bounded
    """

    def __init__(
        self,
        target: str,
        namespace: str = "default",
        client: Optional[Client] = None,
        drain_timeout_seconds: float = 20,
    ) -> None:
        super().__init__()
        self._target = target
        self._namespace = namespace
        self._client = client
        self._drain_timeout = drain_timeout_seconds
        self._specs: Dict[str, WorkerSpec] = {}
        self._workers: List[Worker] = []
        self._worker_tasks: List[asyncio.Task] = []

    async def connect(self, retries: int = 3, delay: int = 3) -> None:
        """Connect to Temporal with retry logic."""
        if self._client is not None:
            return
        for attempt in range(1, retries + 1):
            try:
                log.info(
                    "Connecting to Temporal server (%s@%s) attempt %d/%d",
                    self._namespace, self._target, attempt, retries,
                )
                self._client = await Client.connect(self._target, namespace=self._namespace)
                log.info("Connected to Temporal server: %s", self._target)
                return
            except Exception as e:
                log.warning("Connection attempt %d failed: %s", attempt, e)
                if attempt < retries:
                    await asyncio.sleep(delay)
        raise RuntimeError(f"Failed to connect to Temporal server after {retries} attempts")

    def _require_client(self) -> Client:
        if self._client is None:
            raise QueueClosedError("temporal client is not connected")
        return self._client

    async def enqueue(self, queue: str, name: str, payload: Dict[str, Any], opts: JobOptions) -> str:
        client = self._require_client()
        job_id = opts.job_id or str(uuid.uuid4())
        envelope = JobEnvelope(
            job_id=job_id,
            queue=queue,
            name=name,
            payload=dict(payload),
            attempts=opts.attempts,
            backoff_type=opts.backoff.type,
            backoff_ms=opts.backoff.delay_ms,
            timeout_seconds=opts.timeout_seconds,
            enqueued_at=utcnow().isoformat(),
            delay_ms=max(0, opts.delay_ms),
        )
        try:
            await client.start_workflow(
                DelayedJobWorkflow.run,
                envelope,
                id=job_id,
                task_queue=queue,
                id_reuse_policy=WorkflowIDReusePolicy.ALLOW_DUPLICATE_FAILED_ONLY,
            )
        except WorkflowAlreadyStartedError:
            log.debug("Duplicate job id %s ignored", job_id)
        return job_id

    def register_worker(self, spec: WorkerSpec) -> None:
        self._specs[spec.queue] = spec

    async def _serve(self, worker: Worker, queue: str) -> None:
        try:
            await worker.run()
        except asyncio.CancelledError:
            log.info("Worker on %s cancelled", queue)
            raise
        except Exception:
            log.exception("Worker crashed on queue %s", queue)
            raise

    async def start(self) -> None:
        client = self._require_client()
        for queue, spec in self._specs.items():
            worker = Worker(
                client,
                task_queue=queue,
                workflows=[DelayedJobWorkflow],
                activities=[_JobActivity(self, spec).run_job],
                max_concurrent_activities=max(1, spec.concurrency),
                graceful_shutdown_timeout=timedelta(seconds=self._drain_timeout),
            )
            self._workers.append(worker)
            self._worker_tasks.append(asyncio.create_task(self._serve(worker, queue), name=f"worker:{queue}"))
            log.info("Starting worker | queue=%s | concurrency=%d", queue, spec.concurrency)

    async def stop(self, timeout: Optional[float] = None) -> None:
        # Worker.shutdown stops polling and waits for running activities
        shutdowns = [w.shutdown() for w in self._workers]
        if shutdowns:
            try:
                await asyncio.wait_for(asyncio.gather(*shutdowns, return_exceptions=True), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("Temporal workers did not stop within %ss; cancelling", timeout)
                for task in self._worker_tasks:
                    task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._workers.clear()
        self._worker_tasks.clear()

    async def close(self) -> None:
        # temporalio clients hold no explicit close(); dropping the reference releases the channel
        self._client = None
        log.info("Temporal client released")
