# campaign_engine/orchestrator/queue/memory.py
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from campaign_engine.common.errors import QueueClosedError, is_unrecoverable
from campaign_engine.common.timeutil import Clock, utcnow
from campaign_engine.orchestrator.queue.base import Job, JobQueue, JobState, WorkerSpec
from campaign_engine.orchestrator.queue.retry_policies import JobOptions, backoff_delay_ms

log = logging.getLogger("outreach.queue")


@dataclass
class _Pool:
    spec: WorkerSpec
    semaphore: asyncio.Semaphore


class InMemoryJobQueue(JobQueue):
    """
    Process-local delayed job queue.

    Jobs sit in a heap keyed by due time (taken from the injected clock). A
    ticking task promotes due jobs onto per-queue worker pools bounded by a
    semaphore. Tests drive it deterministically with `run_due()` instead.
    """

    def __init__(self, clock: Clock = utcnow, tick_seconds: float = 0.5) -> None:
        super().__init__()
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._jobs: Dict[str, Job] = {}
        self._delayed: List[Tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._pools: Dict[str, _Pool] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._ticker: Optional[asyncio.Task] = None
        self._accepting = True

    # ---- Producer side ------------------------------------------------------

    async def enqueue(self, queue: str, name: str, payload: Dict[str, Any], opts: JobOptions) -> str:
        if not self._accepting:
            raise QueueClosedError(f"queue backend closed; cannot enqueue {name} on {queue}")

        job_id = opts.job_id or str(uuid.uuid4())
        existing = self._jobs.get(job_id)
        if existing is not None:
            log.debug("Duplicate job id %s ignored (state=%s)", job_id, existing.state.value)
            return job_id

        now = self._clock()
        job = Job(
            id=job_id,
            queue=queue,
            name=name,
            payload=dict(payload),
            opts=opts,
            enqueued_at=now,
            due_at=now + timedelta(milliseconds=max(0, opts.delay_ms)),
        )
        self._jobs[job_id] = job
        self._push(job)
        return job_id

    def _push(self, job: Job) -> None:
        job.state = JobState.DELAYED
        heapq.heappush(self._delayed, (job.due_at, next(self._seq), job.id))

    # ---- Consumer side ------------------------------------------------------

    def register_worker(self, spec: WorkerSpec) -> None:
        self._pools[spec.queue] = _Pool(spec=spec, semaphore=asyncio.Semaphore(max(1, spec.concurrency)))

    def _promote_due(self) -> int:
        now = self._clock()
        started = 0
        unrouted: List[Job] = []
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.DELAYED:
                continue
            pool = self._pools.get(job.queue)
            if pool is None:
                unrouted.append(job)
                continue
            job.state = JobState.WAITING
            task = asyncio.create_task(self._process(job, pool), name=f"job:{job.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            started += 1
        for job in unrouted:
            self._push(job)
        return started

    async def _process(self, job: Job, pool: _Pool) -> None:
        async with pool.semaphore:
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            try:
                result = await asyncio.wait_for(pool.spec.processor(job), timeout=job.opts.timeout_seconds)
            except Exception as exc:
                await self._fail_attempt(job, exc)
                return
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = self._clock()
            await self._emit_completed(job, result)

    async def _fail_attempt(self, job: Job, exc: Exception) -> None:
        job.failed_reason = str(exc) or exc.__class__.__name__
        final = is_unrecoverable(exc) or job.is_final_attempt
        if final:
            job.state = JobState.FAILED
            job.finished_at = self._clock()
        else:
            job.due_at = self._clock() + timedelta(
                milliseconds=backoff_delay_ms(job.opts.backoff, job.attempts_made)
            )
            self._push(job)
        await self._emit_failed(job, exc, final)

    async def run_due(self, max_rounds: int = 100) -> int:
        """Process everything due now, including jobs that become due while doing so."""
        processed = 0
        for _ in range(max_rounds):
            started = self._promote_due()
            if not started and not self._inflight:
                break
            processed += started
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        return processed

    # ---- Retention ----------------------------------------------------------

    def prune(self) -> int:
        now = self._clock()
        removed = 0
        completed = sorted(
            (j for j in self._jobs.values() if j.state == JobState.COMPLETED),
            key=lambda j: j.finished_at or now,
        )
        overflow = max(0, len(completed) - completed[0].opts.remove_on_complete_count) if completed else 0
        for index, job in enumerate(completed):
            expired = (now - (job.finished_at or now)).total_seconds() > job.opts.remove_on_complete_age_s
            if expired or index < overflow:
                del self._jobs[job.id]
                removed += 1
        for job in [j for j in self._jobs.values() if j.state == JobState.FAILED]:
            if (now - (job.finished_at or now)).total_seconds() > job.opts.remove_on_fail_age_s:
                del self._jobs[job.id]
                removed += 1
        return removed

    # ---- Lifecycle ----------------------------------------------------------

    async def _tick_loop(self) -> None:
        while True:
            try:
                self._promote_due()
                self.prune()
            except Exception:
                log.exception("queue tick failed")
            await asyncio.sleep(self._tick_seconds)

    async def start(self) -> None:
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick_loop(), name="memory-queue-ticker")
            log.info("In-memory queue started (queues=%s)", sorted(self._pools))

    async def stop(self, timeout: Optional[float] = None) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            await asyncio.gather(self._ticker, return_exceptions=True)
            self._ticker = None

        pending = set(self._inflight)
        if not pending:
            return
        log.info("Waiting for %d in-flight job(s)", len(pending))
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            log.warning("Cancelling %d job(s) still running after %ss", len(not_done), timeout)
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)

    async def close(self) -> None:
        self._accepting = False
        log.info("In-memory queue closed")

    # ---- Introspection ------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def jobs(self, queue: Optional[str] = None, state: Optional[JobState] = None) -> List[Job]:
        return [
            j for j in self._jobs.values()
            if (queue is None or j.queue == queue) and (state is None or j.state == state)
        ]
