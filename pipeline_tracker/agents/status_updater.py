"""
Pipeline Status Updater
=======================
The reconciliation loop: keeps every in-flight execution in step with what
Jenkins reports, and fires the completion side effects exactly once.

One cycle (PipelineStatusUpdater.reconcile_once):
    1. Read ALL executions from the store, keep those with status RUNNING
    2. For each one, independently (bounded parallelism, per-record lock):
         a. Re-read the record under its lock (manual edits win)
         b. Poll Jenkins with a timeout
         c. RUNNING / PENDING / UNKNOWN → one "pending" commit status, no change
         d. SUCCESS / FAILURE / ABORTED → status copied verbatim, stage label,
            completed_at, duration, console output; saved; THEN one commit
            status and one completion notification
    3. A failed record (poll timeout, store write error) is logged and left
       RUNNING for the next cycle; its siblings are unaffected

Exactly-once side effects:
    The completion side effects fire only on the RUNNING → terminal edge, after
    the save succeeded. The next cycle's RUNNING filter excludes the record, so
    nothing fires again for it.

Scheduling (ReconciliationScheduler):
    - One asyncio task per process, fixed delay between cycles
    - Single-flight: a cycle never overlaps another
    - RECONCILE_CYCLE_TIMEOUT_SECONDS is a start deadline: records not started
      by then are deferred to the next cycle. A started record is never
      cancelled, so a saved terminal status always gets its side effects
    - A failing cycle is logged; the scheduler waits for the next tick
    - stop() lets the in-progress cycle finish before returning

Known gap:
    Two processes running this loop against the same store can both observe
    the same edge and notify twice. There is no lease or leader election.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

from pipeline_tracker.core.config import (
    EXECUTOR_TIMEOUT_SECONDS,
    RECONCILE_CYCLE_TIMEOUT_SECONDS,
    RECONCILE_INTERVAL_SECONDS,
    RECONCILE_MAX_PARALLEL,
    SIDE_EFFECT_TIMEOUT_SECONDS,
)
from pipeline_tracker.core.constants import (
    COMMIT_DESCRIPTION_ABORTED,
    COMMIT_DESCRIPTION_FAILURE,
    COMMIT_DESCRIPTION_PENDING,
    COMMIT_DESCRIPTION_SUCCESS,
)
from pipeline_tracker.core.errors import TransientPollFailure
from pipeline_tracker.executor.jenkins_client import JenkinsClient
from pipeline_tracker.models.execution import (
    Execution,
    ExecutionStatus,
    ExecutorStatus,
    utcnow,
)
from pipeline_tracker.services.execution_store import ExecutionStore
from pipeline_tracker.services.github_status import CommitState, GitHubStatusReporter
from pipeline_tracker.services.notification_service import NotificationService
from pipeline_tracker.utils.side_effects import best_effort

logger = logging.getLogger(__name__)

_COMMIT_DESCRIPTIONS = {
    ExecutionStatus.SUCCESS: COMMIT_DESCRIPTION_SUCCESS,
    ExecutionStatus.FAILURE: COMMIT_DESCRIPTION_FAILURE,
    ExecutionStatus.ABORTED: COMMIT_DESCRIPTION_ABORTED,
}


class RecordOutcome(str, Enum):
    COMPLETED = "completed"          # terminal transition applied
    STILL_RUNNING = "still_running"  # Jenkins still busy / indeterminate
    RETRY = "retry"                  # transient poll failure
    DEFERRED = "deferred"            # cycle budget spent before the record started
    SKIPPED = "skipped"              # no longer RUNNING, or no build number
    ERROR = "error"                  # store write or unexpected failure


class CycleReport(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    in_flight: int = 0
    completed: List[int] = []
    still_running: int = 0
    retried: int = 0
    deferred: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, execution_id: int, outcome: RecordOutcome) -> None:
        if outcome == RecordOutcome.COMPLETED:
            self.completed.append(execution_id)
        elif outcome == RecordOutcome.STILL_RUNNING:
            self.still_running += 1
        elif outcome == RecordOutcome.RETRY:
            self.retried += 1
        elif outcome == RecordOutcome.DEFERRED:
            self.deferred += 1
        elif outcome == RecordOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1


def commit_state_for(status: ExecutionStatus) -> CommitState:
    return CommitState.SUCCESS if status == ExecutionStatus.SUCCESS else CommitState.FAILURE


class PipelineStatusUpdater:
    """
    Drives RUNNING executions to their terminal status.
    """

    def __init__(
        self,
        store: ExecutionStore,
        jenkins: JenkinsClient,
        github: GitHubStatusReporter,
        notifier: NotificationService,
        poll_timeout: float = EXECUTOR_TIMEOUT_SECONDS,
        side_effect_timeout: float = SIDE_EFFECT_TIMEOUT_SECONDS,
        max_parallel: int = RECONCILE_MAX_PARALLEL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.jenkins = jenkins
        self.github = github
        self.notifier = notifier
        self.poll_timeout = poll_timeout
        self.side_effect_timeout = side_effect_timeout
        self.max_parallel = max(1, max_parallel)
        self._clock = clock

    async def reconcile_once(self, deadline: Optional[float] = None) -> CycleReport:
        """
        Run one reconciliation cycle over the current in-flight set.

        ``deadline`` is an event-loop time. Records that have not started by
        then are deferred to the next cycle; a record that has started always
        runs to the end, side effects included.

        Store read failures propagate to the caller (the scheduler); per-record
        failures never do.
        """
        report = CycleReport(started_at=self._clock())

        executions = await self.store.list_all()
        in_flight = [e for e in executions if e.status == ExecutionStatus.RUNNING]
        report.in_flight = len(in_flight)
        if in_flight:
            logger.debug("Found %d running pipelines to update", len(in_flight))

        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def _guarded(execution_id: int) -> RecordOutcome:
            async with semaphore:
                if deadline is not None and loop.time() >= deadline:
                    return RecordOutcome.DEFERRED
                return await self._reconcile_record(execution_id)

        outcomes = await asyncio.gather(*(_guarded(e.id) for e in in_flight))
        for execution, outcome in zip(in_flight, outcomes):
            report.record(execution.id, outcome)

        report.finished_at = self._clock()
        if report.completed or report.errors or report.deferred:
            logger.info(
                "Reconciliation cycle: %d in flight, %d completed, %d retried, %d deferred, %d errors",
                report.in_flight, len(report.completed), report.retried, report.deferred, report.errors,
            )
        return report

    async def _reconcile_record(self, execution_id: int) -> RecordOutcome:
        try:
            async with self.store.lock(execution_id):
                execution = await self.store.get(execution_id)

                # Edited since the listing (manual status change)
                if execution.status != ExecutionStatus.RUNNING:
                    return RecordOutcome.SKIPPED
                if execution.build_number is None:
                    logger.warning(
                        "Execution %d is RUNNING without a build number, cannot poll", execution_id
                    )
                    return RecordOutcome.SKIPPED

                logger.debug(
                    "Checking Jenkins status for execution ID %d (Build #%d)",
                    execution_id, execution.build_number,
                )
                executor_status = await self._poll(execution.build_number)

                if not executor_status.is_terminal:
                    if executor_status == ExecutorStatus.UNKNOWN:
                        logger.warning(
                            "Build #%d reported an unrecognised status, leaving execution %d RUNNING",
                            execution.build_number, execution_id,
                        )
                    saved = None
                else:
                    execution.complete(executor_status, now=self._clock())
                    execution.console_output = await best_effort(
                        "console capture",
                        self.jenkins.fetch_log(execution.build_number),
                        self.poll_timeout,
                    )
                    saved = await self.store.save(execution)

        except TransientPollFailure as e:
            logger.warning("Execution %d stays RUNNING: %s", execution_id, e)
            return RecordOutcome.RETRY
        except Exception as e:
            logger.error("Failed to update execution %d: %s", execution_id, e, exc_info=True)
            return RecordOutcome.ERROR

        # Side effects run outside the record lock
        if saved is None:
            await self._report_pending(execution)
            return RecordOutcome.STILL_RUNNING

        await self._fire_completion(saved)
        logger.info("Updated execution %d to status: %s", saved.id, saved.status.value)
        return RecordOutcome.COMPLETED

    async def _poll(self, build_number: int) -> ExecutorStatus:
        try:
            return await asyncio.wait_for(
                self.jenkins.poll_status(build_number, last_known=ExecutorStatus.RUNNING),
                timeout=self.poll_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientPollFailure(build_number, f"timed out after {self.poll_timeout:g}s") from exc
        except Exception as exc:
            raise TransientPollFailure(build_number, str(exc)) from exc

    async def _report_pending(self, execution: Execution) -> None:
        if not execution.commit_hash:
            return
        await best_effort(
            "pending commit status",
            self.github.report_commit_status(
                execution.repository_url,
                execution.commit_hash,
                CommitState.PENDING,
                COMMIT_DESCRIPTION_PENDING.format(build_number=execution.build_number),
                self.jenkins.build_url(execution.build_number),
            ),
            self.side_effect_timeout,
        )

    async def _fire_completion(self, execution: Execution) -> None:
        if execution.commit_hash:
            await best_effort(
                "final commit status",
                self.github.report_commit_status(
                    execution.repository_url,
                    execution.commit_hash,
                    commit_state_for(execution.status),
                    _COMMIT_DESCRIPTIONS[execution.status],
                    self.jenkins.build_url(execution.build_number),
                ),
                self.side_effect_timeout,
            )
        await best_effort(
            "completion notification",
            self.notifier.pipeline_completed(execution),
            self.side_effect_timeout,
        )


class ReconciliationScheduler:
    """
    Process-wide recurring task around a PipelineStatusUpdater.

    Lifecycle:
        scheduler = ReconciliationScheduler(updater)
        scheduler.start()        # inside a running event loop
        ...
        await scheduler.stop()   # waits for the in-progress cycle
    """

    def __init__(
        self,
        updater: PipelineStatusUpdater,
        interval: float = RECONCILE_INTERVAL_SECONDS,
        cycle_timeout: float = RECONCILE_CYCLE_TIMEOUT_SECONDS,
    ) -> None:
        self.updater = updater
        self.interval = interval
        self.cycle_timeout = cycle_timeout
        self.cycles_run = 0
        self.last_report: Optional[CycleReport] = None
        self.last_error: str = ""
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._cycle_lock: Optional[asyncio.Lock] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.debug("Reconciliation loop already running")
            return
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._task = asyncio.create_task(self._run(), name="pipeline-reconciliation")
        logger.info("Reconciliation loop started (every %gs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Reconciliation loop stopped after %d cycles", self.cycles_run)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_cycle()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> Optional[CycleReport]:
        """
        Run one bounded cycle. Returns None when the cycle was skipped
        (another one in progress) or failed; never raises.
        """
        if self._cycle_lock is None:
            self._cycle_lock = asyncio.Lock()
        if self._cycle_lock.locked():
            logger.debug("Reconciliation cycle already in progress, skipping tick")
            return None

        async with self._cycle_lock:
            self.cycles_run += 1
            deadline = asyncio.get_running_loop().time() + self.cycle_timeout
            try:
                report = await self.updater.reconcile_once(deadline=deadline)
            except Exception as e:
                self.last_error = str(e)
                logger.error("Error in scheduled pipeline update: %s", e, exc_info=True)
                return None

            if report.deferred:
                self.last_error = (
                    f"cycle exceeded {self.cycle_timeout:g}s, {report.deferred} executions deferred"
                )
                logger.warning("Reconciliation %s", self.last_error)
            else:
                self.last_error = ""
            self.last_report = report
            return report

    def snapshot(self) -> dict:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval,
            "cycles_run": self.cycles_run,
            "last_error": self.last_error,
            "last_report": self.last_report.model_dump(mode="json") if self.last_report else None,
        }
