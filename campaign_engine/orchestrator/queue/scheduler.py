# campaign_engine/orchestrator/queue/scheduler.py
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from campaign_engine.common.errors import UnknownJobError, classify_exception
from campaign_engine.common.metrics import JOB_LATENCY, JOBS_COMPLETED, JOBS_ENQUEUED, JOBS_FAILED
from campaign_engine.common.tracing import trace_scope
from campaign_engine.orchestrator.queue.base import Job, JobQueue, WorkerSpec
from campaign_engine.orchestrator.queue.retry_policies import Backoff, JobOptions

log = logging.getLogger("outreach.scheduler")

JobHandler = Callable[[Job], Awaitable[Any]]


class JobScheduler:
    """
    Thin facade over a JobQueue backend.

    Owns default job options, routes jobs to handlers by (queue, job name), binds
    the job id as trace id while a handler runs, and records every completion
    and failure with structured context.
    """

    def __init__(self, backend: JobQueue, default_options: Optional[JobOptions] = None) -> None:
        self._backend = backend
        self._defaults = default_options or JobOptions()
        self._handlers: Dict[str, Dict[str, JobHandler]] = {}
        backend.on_completed(self._record_completed)
        backend.on_failed(self._record_failed)

    @property
    def backend(self) -> JobQueue:
        return self._backend

    @property
    def default_options(self) -> JobOptions:
        return self._defaults

    # ---- Producer side ------------------------------------------------------

    async def enqueue(
        self,
        queue: str,
        job_name: str,
        payload: Dict[str, Any],
        *,
        delay_ms: int = 0,
        job_id: Optional[str] = None,
        attempts: Optional[int] = None,
        backoff: Optional[Backoff] = None,
    ) -> str:
        opts = self._defaults.with_overrides(
            delay_ms=max(0, int(delay_ms)), job_id=job_id, attempts=attempts, backoff=backoff
        )
        enqueued_id = await self._backend.enqueue(queue, job_name, payload, opts)
        JOBS_ENQUEUED.labels(queue, job_name).inc()
        log.info(
            "Job enqueued %s/%s id=%s delay=%dms", queue, job_name, enqueued_id, opts.delay_ms,
            extra={"queue": queue, "job_id": enqueued_id, "job_name": job_name, "delay_ms": opts.delay_ms},
        )
        return enqueued_id

    # ---- Consumer side ------------------------------------------------------

    def register_worker(self, queue: str, handlers: Mapping[str, JobHandler], concurrency: int = 1) -> None:
        self._handlers[queue] = dict(handlers)
        self._backend.register_worker(WorkerSpec(queue=queue, processor=self._processor(queue), concurrency=concurrency))
        log.info("Registered worker | queue=%s | jobs=%s | concurrency=%d", queue, sorted(handlers), concurrency)

    def _processor(self, queue: str) -> Callable[[Job], Awaitable[Any]]:
        async def process(job: Job) -> Any:
            handler = self._handlers.get(queue, {}).get(job.name)
            if handler is None:
                raise UnknownJobError(f"no handler for job {job.name!r} on queue {queue!r}")
            with trace_scope(job.id):
                started = time.monotonic()
                try:
                    return await handler(job)
                finally:
                    JOB_LATENCY.labels(queue, job.name).observe(time.monotonic() - started)
        return process

    def _record_completed(self, job: Job, result: Any) -> None:
        JOBS_COMPLETED.labels(job.queue, job.name).inc()
        with trace_scope(job.id):
            log.info(
                "Job completed %s/%s id=%s attempt=%d", job.queue, job.name, job.id, job.attempts_made,
                extra={"queue": job.queue, "job_id": job.id, "job_name": job.name, "attempts": job.attempts_made},
            )

    def _record_failed(self, job: Job, exc: BaseException, final: bool) -> None:
        code, retryable = classify_exception(exc)
        JOBS_FAILED.labels(job.queue, job.name, str(final).lower()).inc()
        context = {
            "queue": job.queue,
            "job_id": job.id,
            "job_name": job.name,
            "attempts": job.attempts_made,
            "error": str(exc),
            "error_code": code,
            "final": final,
        }
        with trace_scope(job.id):
            if final:
                log.error(
                    "Job failed %s/%s id=%s after %d attempt(s): %s", job.queue, job.name, job.id,
                    job.attempts_made, exc, extra=context,
                )
            else:
                log.warning(
                    "Job attempt %d failed %s/%s id=%s (retryable=%s): %s", job.attempts_made,
                    job.queue, job.name, job.id, retryable, exc, extra=context,
                )

    # ---- Lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        await self._backend.connect()

    async def start(self) -> None:
        await self._backend.start()

    async def stop(self, timeout: Optional[float] = None) -> None:
        await self._backend.stop(timeout=timeout)

    async def close(self) -> None:
        await self._backend.close()
