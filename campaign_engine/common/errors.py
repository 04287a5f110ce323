# campaign_engine/common/errors.py
from __future__ import annotations
from typing import Tuple

# ---- Canonical error classes ------------------------------------------------

class EngineError(Exception):
    code: str = "unknown"
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)

class InvalidDuration(EngineError):
    code, retryable = "invalid_duration", False

class InvalidPayloadError(EngineError):
    code, retryable = "invalid_payload", False

class PlanValidationError(EngineError):
    code, retryable = "plan_invalid", False

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))

class UnknownJobError(EngineError):
    code, retryable = "unknown_job", False

class QueueClosedError(EngineError):
    code, retryable = "queue_closed", False

class StoreUnavailableError(EngineError):
    code, retryable = "store_unavailable", True


# Temporal matches non-retryable errors by exception class name
NON_RETRYABLE_TYPES = [
    "InvalidDuration",
    "InvalidPayloadError",
    "PlanValidationError",
    "UnknownJobError",
    "QueueClosedError",
]


# ---- Helpers used by the scheduler and workers ------------------------------

def classify_exception(exc: BaseException) -> Tuple[str, bool]:
    """
    Return (code, retryable) for any exception.
    If it's an EngineError subclass, use its metadata.
    Otherwise, make a best-effort guess.
    """
    if isinstance(exc, EngineError):
        return exc.code, exc.retryable

    name = exc.__class__.__name__.lower()
    msg = str(exc).lower()

    if "timeout" in name or "timed out" in msg:
        return "timeout", True
    if "too many requests" in msg or "429" in msg or "rate limit" in msg:
        return "throttled", True
    if any(k in msg for k in ["connection reset", "connection refused", "dns", "ssl", "socket"]):
        return "network_glitch", True
    if "connection" in name or "postgres" in name:
        return "store_unavailable", True
    if any(k in msg for k in ["invalid", "schema", "payload"]):
        return "invalid_payload", False

    return "permanent_failure", False


def is_retryable(exc: BaseException) -> bool:
    _, retry = classify_exception(exc)
    return retry


def is_unrecoverable(exc: BaseException) -> bool:
    """True only for errors we raised ourselves and flagged as non-retryable.

    Anything else is retried by the job queue until its attempts run out.
    """
    return isinstance(exc, EngineError) and not exc.retryable
