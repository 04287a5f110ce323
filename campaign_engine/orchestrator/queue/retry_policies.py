# campaign_engine/orchestrator/queue/retry_policies.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Literal, Optional

from temporalio.common import RetryPolicy

from campaign_engine.common.errors import NON_RETRYABLE_TYPES

# -----------------------------------------------------------------------------
# Job options (central source of truth for queue defaults)
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Backoff:
    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = 500


@dataclass(frozen=True)
class JobOptions:
    delay_ms: int = 0
    job_id: Optional[str] = None
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    timeout_seconds: int = 300
    remove_on_complete_age_s: int = 3600
    remove_on_complete_count: int = 1000
    remove_on_fail_age_s: int = 86400

    def with_overrides(self, **changes) -> "JobOptions":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def default_job_options(settings=None) -> JobOptions:
    """3 attempts, exponential backoff from 500ms, completed jobs kept 1h, failed 24h."""
    if settings is None:
        return JobOptions()
    return JobOptions(
        attempts=settings.JOB_ATTEMPTS,
        backoff=Backoff("exponential", settings.JOB_BACKOFF_MS),
        timeout_seconds=settings.JOB_TIMEOUT_SECONDS,
        remove_on_complete_age_s=settings.REMOVE_ON_COMPLETE_AGE_SECONDS,
        remove_on_complete_count=settings.REMOVE_ON_COMPLETE_COUNT,
        remove_on_fail_age_s=settings.REMOVE_ON_FAIL_AGE_SECONDS,
    )


def backoff_delay_ms(backoff: Backoff, attempts_made: int) -> int:
    """Delay before the next try after `attempts_made` failed attempts."""
    if backoff.type == "fixed":
        return backoff.delay_ms
    return int(backoff.delay_ms * (2 ** max(0, attempts_made - 1)))


def temporal_retry_policy(opts: JobOptions) -> RetryPolicy:
    """
    Same retry budget expressed for Temporal activities.

    Example:
        await workflow.execute_activity(..., retry_policy=temporal_retry_policy(opts))
    """
    return RetryPolicy(
        initial_interval=timedelta(milliseconds=opts.backoff.delay_ms),
        backoff_coefficient=1.0 if opts.backoff.type == "fixed" else 2.0,
        maximum_attempts=opts.attempts,
        non_retryable_error_types=NON_RETRYABLE_TYPES,
    )
