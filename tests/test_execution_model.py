"""
Execution model and status state machine.
"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from pipeline_tracker.core.errors import InvalidTransition
from pipeline_tracker.models.execution import (
    Execution,
    ExecutionStatus,
    ExecutorStatus,
    check_test_counts,
)
from pipeline_tracker.models.pipeline_request import (
    PipelineRequest,
    StatusUpdate,
    SubStatusUpdate,
    SuiteResultsUpdate,
)

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _execution(**fields):
    return Execution(
        student_name="Alice",
        repository_url="https://github.com/alice/java-lab.git",
        started_at=T0,
        **fields,
    )


def test_new_execution_defaults():
    execution = _execution()
    assert execution.status == ExecutionStatus.PENDING
    assert execution.current_stage == "INITIALIZED"
    assert execution.branch_name == "main"
    assert execution.completed_at is None
    assert execution.duration is None
    assert not execution.is_terminal


def test_running_to_success_sets_completion_and_duration():
    execution = _execution()
    execution.mark_running(42)
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.current_stage == "CHECKOUT"

    changed = execution.complete(ExecutorStatus.SUCCESS, now=T0 + timedelta(seconds=95))

    assert changed is True
    assert execution.status == ExecutionStatus.SUCCESS
    assert execution.current_stage == "COMPLETED"
    assert execution.completed_at == T0 + timedelta(seconds=95)
    assert execution.duration == 95.0


@pytest.mark.parametrize("executor_status,stage", [
    (ExecutorStatus.FAILURE, "FAILED"),
    (ExecutorStatus.ABORTED, "ABORTED"),
])
def test_terminal_stage_labels(executor_status, stage):
    execution = _execution()
    execution.mark_running(7)
    execution.complete(executor_status, now=T0 + timedelta(seconds=1))
    assert execution.status.value == executor_status.value
    assert execution.current_stage == stage


def test_completion_never_precedes_start():
    execution = _execution()
    execution.mark_running(1)
    execution.complete(ExecutorStatus.SUCCESS, now=T0 - timedelta(seconds=30))
    assert execution.completed_at == T0
    assert execution.duration == 0.0


def test_terminal_status_is_final():
    execution = _execution()
    execution.mark_running(42)
    execution.complete(ExecutorStatus.SUCCESS, now=T0 + timedelta(seconds=5))

    with pytest.raises(InvalidTransition) as exc:
        execution.transition_to(ExecutionStatus.RUNNING)
    assert "SUCCESS -> RUNNING" in str(exc.value)

    with pytest.raises(InvalidTransition):
        execution.transition_to(ExecutionStatus.FAILURE)


def test_same_status_only_updates_stage():
    execution = _execution()
    execution.mark_running(42)
    changed = execution.transition_to(ExecutionStatus.RUNNING, stage="TEST")
    assert changed is False
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.current_stage == "TEST"


def test_pending_cannot_jump_to_success():
    execution = _execution()
    with pytest.raises(InvalidTransition):
        execution.transition_to(ExecutionStatus.SUCCESS)
    assert execution.status == ExecutionStatus.PENDING


def test_running_requires_build_number():
    execution = _execution()
    with pytest.raises(InvalidTransition) as exc:
        execution.transition_to(ExecutionStatus.RUNNING)
    assert "no build number assigned" in str(exc.value)
    assert execution.status == ExecutionStatus.PENDING


def test_submission_failure_is_terminal_without_build_number():
    execution = _execution()
    execution.mark_submission_failed("Failed to trigger Jenkins: connection refused")
    assert execution.status == ExecutionStatus.FAILURE
    assert execution.current_stage == "FAILED"
    assert execution.build_number is None
    assert execution.completed_at is not None
    assert execution.error_message.startswith("Failed to trigger Jenkins:")


def test_build_number_is_immutable():
    execution = _execution()
    execution.assign_build_number(42)
    execution.assign_build_number(42)
    with pytest.raises(ValueError):
        execution.assign_build_number(43)
    assert execution.build_number == 42


def test_non_terminal_executor_status_cannot_complete():
    execution = _execution()
    execution.mark_running(42)
    with pytest.raises(ValueError):
        execution.complete(ExecutorStatus.UNKNOWN)
    assert execution.status == ExecutionStatus.RUNNING


def test_terminal_record_requires_completed_at():
    with pytest.raises(ValidationError):
        _execution(status=ExecutionStatus.SUCCESS)


def test_pending_record_rejects_completed_at():
    with pytest.raises(ValidationError):
        _execution(completed_at=T0)


def test_test_counts_validated_on_construction():
    with pytest.raises(ValidationError):
        _execution(total_tests=3, tests_passed=2, tests_failed=2)
    execution = _execution(total_tests=5, tests_passed=3, tests_failed=2)
    assert execution.total_tests == 5


def test_record_test_counts_rejects_overflow():
    execution = _execution()
    with pytest.raises(ValueError):
        execution.record_test_counts(10, 8, 3)
    execution.record_test_counts(10, 8, 2, test_status="FAILED")
    assert (execution.total_tests, execution.tests_passed, execution.tests_failed) == (10, 8, 2)
    assert execution.test_status == "FAILED"


def test_check_test_counts_allows_partial_values():
    check_test_counts(None, 5, 9)
    with pytest.raises(ValueError):
        check_test_counts(-1, None, None)


def test_status_parsing_is_lenient():
    assert ExecutionStatus("running") == ExecutionStatus.RUNNING
    assert ExecutionStatus("FAILED") == ExecutionStatus.FAILURE
    with pytest.raises(ValueError):
        ExecutionStatus("EXPLODED")


def test_executor_status_terminality():
    assert ExecutorStatus.SUCCESS.is_terminal
    assert ExecutorStatus.ABORTED.is_terminal
    assert not ExecutorStatus.UNKNOWN.is_terminal
    assert not ExecutorStatus.PENDING.is_terminal
    assert ExecutorStatus.FAILURE.to_execution_status() == ExecutionStatus.FAILURE


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------
def test_pipeline_request_normalisation():
    request = PipelineRequest(
        student_name="  Alice ",
        repository_url="https://github.com/alice/java-lab.git",
        branch_name="   ",
        commit_hash="",
    )
    assert request.student_name == "Alice"
    assert request.branch == "main"
    assert request.commit_hash is None


def test_pipeline_request_requires_student_and_repo():
    with pytest.raises(ValidationError):
        PipelineRequest(student_name=" ", repository_url="https://github.com/a/b")
    with pytest.raises(ValidationError):
        PipelineRequest(student_name="Alice", repository_url="")


def test_status_update_parsing():
    assert StatusUpdate(status="failed").status == ExecutionStatus.FAILURE
    with pytest.raises(ValidationError):
        StatusUpdate(status="nope")


def test_sub_status_update_uppercases():
    assert SubStatusUpdate(status=" passed ").status == "PASSED"


def test_suite_results_count_check():
    with pytest.raises(ValidationError):
        SuiteResultsUpdate(test_status="FAILED", total=1, passed=1, failed=1)
