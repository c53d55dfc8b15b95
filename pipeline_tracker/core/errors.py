"""
Errors
======
Exception taxonomy shared by the executor client, the record store, the
reconciliation loop and the HTTP layer.

    ExecutorUnreachable   — submission could not reach Jenkins (network / timeout)
    ExecutorRejected      — Jenkins answered the submission with a non-2xx status
    TransientPollFailure  — a status poll failed; the record stays RUNNING
    SideEffectFailure     — a commit status or notification could not be delivered
    RecordNotFound        — no execution with the requested id
    InvalidTransition     — the state machine refused a status change
"""
from typing import Optional


class PipelineTrackerError(Exception):
    """Base class for all tracker errors."""


class ExecutorError(PipelineTrackerError):
    """Submission to the build executor failed."""


class ExecutorUnreachable(ExecutorError):
    pass


class ExecutorRejected(ExecutorError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientPollFailure(PipelineTrackerError):
    def __init__(self, build_number: Optional[int], reason: str) -> None:
        super().__init__(f"Poll of build #{build_number} failed: {reason}")
        self.build_number = build_number
        self.reason = reason


class SideEffectFailure(PipelineTrackerError):
    def __init__(self, effect: str, reason: str) -> None:
        super().__init__(f"{effect} failed: {reason}")
        self.effect = effect
        self.reason = reason


class RecordNotFound(PipelineTrackerError):
    def __init__(self, execution_id) -> None:
        super().__init__(f"Pipeline execution not found with ID: {execution_id}")
        self.execution_id = execution_id


class InvalidTransition(PipelineTrackerError):
    def __init__(self, current, requested, reason: str = "") -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        message = f"Illegal status transition {current_value} -> {requested_value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.requested = requested
