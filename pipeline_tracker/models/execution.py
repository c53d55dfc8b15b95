"""
Execution Model
===============
Pydantic model for one tracked run of a build/test/deploy job, plus the
status state machine that every mutation goes through.

State machine:
    PENDING → RUNNING → {SUCCESS, FAILURE, ABORTED}
    PENDING → FAILURE        (submission to Jenkins failed)

    RUNNING is only entered once a build number is assigned.

    Terminal statuses are final. A request for the status a record already
    holds only updates the stage label.

Invariants enforced here:
    - completed_at is set if and only if status is terminal
    - duration == completed_at - started_at, computed once on the terminal transition
    - completed_at >= started_at
    - build_number is immutable once assigned
    - tests_passed + tests_failed <= total_tests when all three are present

ExecutorStatus is the closed vocabulary decoded from Jenkins payloads. Values
Jenkins reports that we do not recognise decode to UNKNOWN, never RUNNING.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from pipeline_tracker.core.constants import (
    DEFAULT_BRANCH,
    STAGE_CHECKOUT,
    STAGE_INITIALIZED,
    TERMINAL_STAGE_LABELS,
)
from pipeline_tracker.core.errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    @classmethod
    def _missing_(cls, value):
        # Accept lowercase input and the legacy "FAILED" spelling
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "FAILED":
                return cls.FAILURE
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILURE,
    ExecutionStatus.ABORTED,
})

_ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILURE},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.SUCCESS,
        ExecutionStatus.FAILURE,
        ExecutionStatus.ABORTED,
    },
    ExecutionStatus.SUCCESS: set(),
    ExecutionStatus.FAILURE: set(),
    ExecutionStatus.ABORTED: set(),
}


class ExecutorStatus(str, Enum):
    """Build state as reported by Jenkins."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutorStatus.SUCCESS, ExecutorStatus.FAILURE, ExecutorStatus.ABORTED)

    def to_execution_status(self) -> ExecutionStatus:
        if not self.is_terminal:
            raise ValueError(f"{self.value} is not a terminal executor status")
        return ExecutionStatus(self.value)


def terminal_stage_label(status: ExecutionStatus) -> str:
    return TERMINAL_STAGE_LABELS[status.value]


def check_test_counts(
    total: Optional[int],
    passed: Optional[int],
    failed: Optional[int],
) -> None:
    """Raise ValueError if the counts are negative or passed + failed exceeds total."""
    for name, value in (("total_tests", total), ("tests_passed", passed), ("tests_failed", failed)):
        if value is not None and value < 0:
            raise ValueError(f"{name} must be >= 0")
    if total is not None and passed is not None and failed is not None:
        if passed + failed > total:
            raise ValueError("tests_passed + tests_failed must not exceed total_tests")


class Execution(BaseModel):
    id: Optional[int] = None
    build_number: Optional[int] = None
    student_name: str
    repository_url: str
    branch_name: str = DEFAULT_BRANCH
    commit_hash: Optional[str] = None

    status: ExecutionStatus = ExecutionStatus.PENDING
    current_stage: str = STAGE_INITIALIZED

    # Independently settable sub-statuses
    build_status: Optional[str] = None
    test_status: Optional[str] = None
    deployment_status: Optional[str] = None

    total_tests: Optional[int] = Field(default=None, ge=0)
    tests_passed: Optional[int] = Field(default=None, ge=0)
    tests_failed: Optional[int] = Field(default=None, ge=0)

    duration: Optional[float] = Field(default=None, ge=0)   # seconds
    console_output: Optional[str] = None
    error_message: Optional[str] = None

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Execution":
        check_test_counts(self.total_tests, self.tests_passed, self.tests_failed)
        if self.status.is_terminal and self.completed_at is None:
            raise ValueError("completed_at is required once status is terminal")
        if not self.status.is_terminal and self.completed_at is not None:
            raise ValueError("completed_at must be empty while status is not terminal")
        if self.completed_at is not None and self.completed_at < self.started_at:
            raise ValueError("completed_at must not precede started_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def transition_to(
        self,
        status: ExecutionStatus,
        *,
        stage: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move the record to ``status``.

        Returns True when the status changed, False when ``status`` equals the
        current status (only the stage is updated then). Raises
        InvalidTransition for any move the state machine does not allow.
        """
        status = ExecutionStatus(status)
        now = now or utcnow()

        if status == self.status:
            if stage is not None:
                self.current_stage = stage
            self.updated_at = now
            return False

        if status not in _ALLOWED_TRANSITIONS[self.status]:
            reason = "terminal status is final" if self.is_terminal else ""
            raise InvalidTransition(self.status, status, reason)
        if status == ExecutionStatus.RUNNING and self.build_number is None:
            raise InvalidTransition(self.status, status, "no build number assigned")

        self.status = status
        if stage is not None:
            self.current_stage = stage
        if status.is_terminal:
            completed = max(now, self.started_at)
            self.completed_at = completed
            self.duration = (completed - self.started_at).total_seconds()
        self.updated_at = now
        return True

    def assign_build_number(self, build_number: int) -> None:
        if self.build_number is not None and self.build_number != build_number:
            raise ValueError(
                f"build_number already set to {self.build_number}, refusing {build_number}"
            )
        self.build_number = build_number

    def mark_running(self, build_number: int, stage: str = STAGE_CHECKOUT) -> None:
        """Submission accepted by Jenkins."""
        self.assign_build_number(build_number)
        self.transition_to(ExecutionStatus.RUNNING, stage=stage)

    def mark_submission_failed(self, message: str, now: Optional[datetime] = None) -> None:
        """Submission refused or Jenkins unreachable: terminal FAILURE without polling."""
        self.error_message = message
        self.transition_to(
            ExecutionStatus.FAILURE,
            stage=terminal_stage_label(ExecutionStatus.FAILURE),
            now=now,
        )

    def complete(self, executor_status: ExecutorStatus, now: Optional[datetime] = None) -> bool:
        """Apply a terminal status reported by Jenkins, copied verbatim."""
        final = executor_status.to_execution_status()
        return self.transition_to(final, stage=terminal_stage_label(final), now=now)

    def record_test_counts(
        self,
        total: Optional[int],
        passed: Optional[int],
        failed: Optional[int],
        test_status: Optional[str] = None,
    ) -> None:
        check_test_counts(total, passed, failed)
        self.total_tests = total
        self.tests_passed = passed
        self.tests_failed = failed
        if test_status is not None:
            self.test_status = test_status
        self.updated_at = utcnow()
