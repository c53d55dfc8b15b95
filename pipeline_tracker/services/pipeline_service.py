"""
Pipeline Service
================
Submission path and record-level operations behind the HTTP API.

Submission (trigger_pipeline):
    1. Create the execution in PENDING, started_at = now
    2. Announce it (best-effort notification)
    3. Submit to Jenkins
         accepted  → RUNNING with the real build number, stage CHECKOUT
         refused / unreachable → FAILURE immediately, error_message set;
                                 never enters the reconciliation loop

Manual edits (status, sub-statuses, test results) take the same per-record
lock as the reconciliation loop, so they never race with a terminal transition.
"""
import logging
from typing import List, Optional

from pipeline_tracker.core.config import SIDE_EFFECT_TIMEOUT_SECONDS
from pipeline_tracker.core.constants import CONSOLE_PLACEHOLDER, SUBMISSION_ERROR_PREFIX
from pipeline_tracker.core.errors import ExecutorError
from pipeline_tracker.executor.jenkins_client import JenkinsClient
from pipeline_tracker.models.execution import Execution, ExecutionStatus
from pipeline_tracker.models.pipeline_request import PipelineRequest, SuiteResultsUpdate
from pipeline_tracker.models.test_result import ExecutionTestCase
from pipeline_tracker.services.execution_store import ExecutionStore
from pipeline_tracker.services.notification_service import NotificationService
from pipeline_tracker.utils.side_effects import best_effort

logger = logging.getLogger(__name__)


def _newest_first(executions: List[Execution]) -> List[Execution]:
    return sorted(executions, key=lambda e: (e.created_at, e.id or 0), reverse=True)


class PipelineService:

    def __init__(
        self,
        store: ExecutionStore,
        jenkins: JenkinsClient,
        notifier: NotificationService,
        side_effect_timeout: float = SIDE_EFFECT_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.jenkins = jenkins
        self.notifier = notifier
        self.side_effect_timeout = side_effect_timeout

    async def trigger_pipeline(self, request: PipelineRequest) -> Execution:
        logger.info(
            "Triggering pipeline for student: %s, repo: %s",
            request.student_name, request.repository_url,
        )

        execution = await self.store.create(Execution(
            student_name=request.student_name,
            repository_url=request.repository_url,
            branch_name=request.branch,
            commit_hash=request.commit_hash,
        ))
        logger.info("Created pipeline execution with ID: %d", execution.id)

        await best_effort(
            "start notification",
            self.notifier.pipeline_started(execution),
            self.side_effect_timeout,
        )

        async with self.store.lock(execution.id):
            try:
                build_number = await self.jenkins.submit(request)
            except ExecutorError as e:
                logger.error("Failed to trigger Jenkins build for execution %d: %s", execution.id, e)
                execution.mark_submission_failed(f"{SUBMISSION_ERROR_PREFIX} {e}")
            else:
                execution.mark_running(build_number)
                logger.info(
                    "Execution %d is RUNNING as Jenkins build #%d", execution.id, build_number
                )
            return await self.store.save(execution)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_all_executions(self) -> List[Execution]:
        return _newest_first(await self.store.list_all())

    async def get_execution(self, execution_id: int) -> Execution:
        return await self.store.get(execution_id)

    async def get_executions_by_student(self, student_name: str) -> List[Execution]:
        return _newest_first(await self.store.list_by(student_name=student_name))

    async def get_test_results(self, execution_id: int) -> List[ExecutionTestCase]:
        return await self.store.list_test_results(execution_id)

    async def get_console_output(self, execution_id: int) -> str:
        execution = await self.store.get(execution_id)
        if execution.console_output:
            return execution.console_output
        if execution.build_number is None:
            return CONSOLE_PLACEHOLDER
        return await self.jenkins.fetch_log(execution.build_number)

    # ------------------------------------------------------------------
    # Manual updates
    # ------------------------------------------------------------------
    async def update_execution_status(
        self, execution_id: int, status: ExecutionStatus, stage: Optional[str] = None
    ) -> Execution:
        """Raises RecordNotFound or InvalidTransition."""
        logger.info("Updating execution %d - Status: %s, Stage: %s", execution_id, status, stage)
        async with self.store.lock(execution_id):
            execution = await self.store.get(execution_id)
            execution.transition_to(status, stage=stage)
            return await self.store.save(execution)

    async def update_build_status(self, execution_id: int, build_status: str) -> Execution:
        logger.info("Updating build status for execution %d: %s", execution_id, build_status)
        async with self.store.lock(execution_id):
            execution = await self.store.get(execution_id)
            execution.build_status = build_status
            return await self.store.save(execution)

    async def update_deployment_status(self, execution_id: int, deployment_status: str) -> Execution:
        logger.info("Updating deployment status for execution %d: %s", execution_id, deployment_status)
        async with self.store.lock(execution_id):
            execution = await self.store.get(execution_id)
            execution.deployment_status = deployment_status
            return await self.store.save(execution)

    async def update_test_results(self, execution_id: int, update: SuiteResultsUpdate) -> Execution:
        logger.info(
            "Updating test results for execution %d: Total=%d, Passed=%d, Failed=%d",
            execution_id, update.total, update.passed, update.failed,
        )
        async with self.store.lock(execution_id):
            execution = await self.store.get(execution_id)
            execution.record_test_counts(
                update.total, update.passed, update.failed, test_status=update.test_status
            )
            saved = await self.store.save(execution)
            if update.cases:
                await self.store.add_test_results(execution_id, update.cases)
            return saved
