# campaign_engine/orchestrator/queue/base.py
from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from campaign_engine.orchestrator.queue.retry_policies import JobOptions

log = logging.getLogger("outreach.queue")


class JobState(str, Enum):
    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    queue: str
    name: str
    payload: Dict[str, Any]
    opts: JobOptions
    enqueued_at: datetime
    due_at: datetime
    attempts_made: int = 0
    state: JobState = JobState.DELAYED
    finished_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    result: Any = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.opts.attempts


Processor = Callable[[Job], Awaitable[Any]]
CompletedListener = Callable[[Job, Any], Any]
FailedListener = Callable[[Job, BaseException, bool], Any]


@dataclass
class WorkerSpec:
    queue: str
    processor: Processor
    concurrency: int = 1
    extra: Dict[str, Any] = field(default_factory=dict)


class JobQueue(ABC):
    """
    Delayed, at-least-once job queue backend.

    - `enqueue` is idempotent on `opts.job_id`: a second enqueue with a live id is a no-op.
    - A processor returning normally completes the job; raising fails the attempt
      and the backend retries with backoff until `opts.attempts` is reached.
    - Listeners are told about every completion and every failed attempt
      (`final=True` once no retry will follow).
    """

    def __init__(self) -> None:
        self._completed_listeners: List[CompletedListener] = []
        self._failed_listeners: List[FailedListener] = []

    def on_completed(self, listener: CompletedListener) -> None:
        self._completed_listeners.append(listener)

    def on_failed(self, listener: FailedListener) -> None:
        self._failed_listeners.append(listener)

    async def _emit_completed(self, job: Job, result: Any) -> None:
        for listener in self._completed_listeners:
            try:
                out = listener(job, result)
                if inspect.isawaitable(out):
                    await out
            except Exception:
                log.exception("completed listener failed for job %s", job.id)

    async def _emit_failed(self, job: Job, exc: BaseException, final: bool) -> None:
        for listener in self._failed_listeners:
            try:
                out = listener(job, exc, final)
                if inspect.isawaitable(out):
                    await out
            except Exception:
                log.exception("failed listener failed for job %s", job.id)

    async def connect(self) -> None:
        return None

    @abstractmethod
    async def enqueue(self, queue: str, name: str, payload: Dict[str, Any], opts: JobOptions) -> str: ...

    @abstractmethod
    def register_worker(self, spec: WorkerSpec) -> None: ...

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop picking up jobs and wait (bounded) for in-flight ones."""

    @abstractmethod
    async def close(self) -> None:
        """Release the broker connection. Enqueue fails afterwards."""

    def get_job(self, job_id: str) -> Optional[Job]:
        return None
