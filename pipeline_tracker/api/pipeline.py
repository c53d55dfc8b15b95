"""
/api/pipeline
=============
HTTP surface over the pipeline service: trigger executions, read them back,
apply manual edits, and inspect the reconciliation loop.

Error mapping:
    RecordNotFound     → 404
    InvalidTransition  → 409
    ValueError         → 422 (test counts, immutable build number)
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from pipeline_tracker.agents.status_updater import CycleReport, ReconciliationScheduler
from pipeline_tracker.api.dependencies import (
    get_github_reporter,
    get_pipeline_service,
    get_scheduler,
)
from pipeline_tracker.core.config import SERVICE_NAME, SERVICE_VERSION
from pipeline_tracker.core.errors import InvalidTransition, RecordNotFound
from pipeline_tracker.models.execution import Execution
from pipeline_tracker.models.pipeline_request import (
    PipelineRequest,
    StatusUpdate,
    SubStatusUpdate,
    SuiteResultsUpdate,
)
from pipeline_tracker.models.test_result import ExecutionTestCase
from pipeline_tracker.services.github_status import GitHubStatusReporter
from pipeline_tracker.services.pipeline_service import PipelineService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pipeline", tags=["Pipeline"])


def _not_found(execution_id: int) -> HTTPException:
    logger.error("Execution not found: %d", execution_id)
    return HTTPException(status_code=404, detail=f"Pipeline execution {execution_id} not found")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------
@router.post("/trigger", response_model=Execution, status_code=201)
async def trigger_pipeline(
    request: PipelineRequest,
    service: PipelineService = Depends(get_pipeline_service),
):
    """
    Create an execution and submit it to Jenkins.

    A refused or unreachable Jenkins still returns 201: the execution is
    recorded as FAILURE with its error_message.
    """
    logger.info("API: Trigger pipeline request received from student: %s", request.student_name)
    execution = await service.trigger_pipeline(request)
    logger.info("Pipeline triggered. Execution ID: %d, status: %s", execution.id, execution.status.value)
    return execution


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@router.get("/executions", response_model=List[Execution])
async def get_all_executions(service: PipelineService = Depends(get_pipeline_service)):
    return await service.get_all_executions()


@router.get("/executions/{execution_id}", response_model=Execution)
async def get_execution(execution_id: int, service: PipelineService = Depends(get_pipeline_service)):
    try:
        return await service.get_execution(execution_id)
    except RecordNotFound:
        raise _not_found(execution_id)


@router.get("/student/{student_name}", response_model=List[Execution])
async def get_student_executions(
    student_name: str, service: PipelineService = Depends(get_pipeline_service)
):
    return await service.get_executions_by_student(student_name)


@router.get("/executions/{execution_id}/tests", response_model=List[ExecutionTestCase])
async def get_test_results(
    execution_id: int, service: PipelineService = Depends(get_pipeline_service)
):
    try:
        return await service.get_test_results(execution_id)
    except RecordNotFound:
        raise _not_found(execution_id)


@router.get("/executions/{execution_id}/console", response_class=PlainTextResponse)
async def get_console_output(
    execution_id: int, service: PipelineService = Depends(get_pipeline_service)
):
    try:
        return await service.get_console_output(execution_id)
    except RecordNotFound:
        raise _not_found(execution_id)


# ---------------------------------------------------------------------------
# Manual updates
# ---------------------------------------------------------------------------
@router.put("/executions/{execution_id}/status", response_model=Execution)
async def update_status(
    execution_id: int,
    update: StatusUpdate,
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        return await service.update_execution_status(execution_id, update.status, update.stage)
    except RecordNotFound:
        raise _not_found(execution_id)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/executions/{execution_id}/build-status", response_model=Execution)
async def update_build_status(
    execution_id: int,
    update: SubStatusUpdate,
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        return await service.update_build_status(execution_id, update.status)
    except RecordNotFound:
        raise _not_found(execution_id)


@router.put("/executions/{execution_id}/deployment-status", response_model=Execution)
async def update_deployment_status(
    execution_id: int,
    update: SubStatusUpdate,
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        return await service.update_deployment_status(execution_id, update.status)
    except RecordNotFound:
        raise _not_found(execution_id)


@router.put("/executions/{execution_id}/test-results", response_model=Execution)
async def update_test_results(
    execution_id: int,
    update: SuiteResultsUpdate,
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        return await service.update_test_results(execution_id, update)
    except RecordNotFound:
        raise _not_found(execution_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------
@router.get("/health")
async def health_check() -> Dict[str, str]:
    return {"status": "UP", "service": SERVICE_NAME, "version": SERVICE_VERSION}


@router.get("/github/commits")
async def get_recent_commits(
    repo_url: str = Query(..., alias="repoUrl"),
    github: GitHubStatusReporter = Depends(get_github_reporter),
) -> List[Dict[str, Any]]:
    logger.info("API: Fetching recent commits for: %s", repo_url)
    return await github.get_recent_commits(repo_url)


@router.get("/reconciler")
async def reconciler_status(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    return scheduler.snapshot()


@router.post("/reconciler/run", response_model=CycleReport)
async def run_reconciliation(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    """Run one cycle now. 409 if a cycle is already in progress or it failed."""
    report = await scheduler.run_cycle()
    if report is None:
        raise HTTPException(
            status_code=409,
            detail=scheduler.last_error or "Reconciliation cycle already in progress",
        )
    return report
