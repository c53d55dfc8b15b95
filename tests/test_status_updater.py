"""
Reconciliation Loop Tests
=========================
PipelineStatusUpdater against fake collaborators, plus one fully wired cycle
through the real Jenkins / GitHub / Discord clients on mocked transports.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import REPO_URL, FakeGitHub, FakeJenkins, FakeNotifier, create_running
from pipeline_tracker.agents.status_updater import PipelineStatusUpdater, commit_state_for
from pipeline_tracker.executor.jenkins_client import JenkinsClient
from pipeline_tracker.models.execution import Execution, ExecutionStatus, ExecutorStatus
from pipeline_tracker.services.execution_store import ExecutionStore
from pipeline_tracker.services.github_status import CommitState, GitHubStatusReporter
from pipeline_tracker.services.notification_service import DiscordChannel, NotificationService

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FlakyStore(ExecutionStore):
    def __init__(self):
        super().__init__()
        self.failing_saves = 0
        self.fail_listing = False

    async def save(self, execution):
        if self.failing_saves:
            self.failing_saves -= 1
            raise RuntimeError("store write failed")
        return await super().save(execution)

    async def list_all(self):
        if self.fail_listing:
            raise RuntimeError("store unavailable")
        return await super().list_all()


class StaleListingStore(ExecutionStore):
    """A manual ABORTED edit lands between the listing and the per-record re-read."""

    async def list_all(self):
        listing = await super().list_all()
        for execution in listing:
            current = await self.get(execution.id)
            current.transition_to(ExecutionStatus.ABORTED)
            await self.save(current)
        return listing


def test_commit_state_mapping():
    assert commit_state_for(ExecutionStatus.SUCCESS) == CommitState.SUCCESS
    assert commit_state_for(ExecutionStatus.FAILURE) == CommitState.FAILURE
    assert commit_state_for(ExecutionStatus.ABORTED) == CommitState.FAILURE


def test_successful_build_completes_record_and_fires_side_effects(store, jenkins, github, notifier, updater):
    jenkins.statuses[42] = ExecutorStatus.SUCCESS

    async def run_test():
        record = await create_running(store, build_number=42)
        report = await updater.reconcile_once()

        assert report.in_flight == 1
        assert report.completed == [record.id]

        saved = await store.get(record.id)
        assert saved.status == ExecutionStatus.SUCCESS
        assert saved.current_stage == "COMPLETED"
        assert saved.completed_at is not None
        assert saved.duration is not None and saved.duration >= 0
        assert saved.console_output == "BUILD SUCCESSFUL"

        assert github.statuses == [{
            "repo_url": REPO_URL,
            "sha": "abc123",
            "state": CommitState.SUCCESS,
            "description": "All checks passed ✓",
            "target_url": "http://jenkins.local/job/student-cicd-pipeline/42/",
        }]
        assert [e.id for e in notifier.completed] == [record.id]

    asyncio.run(run_test())


def test_side_effects_fire_exactly_once(store, jenkins, github, notifier, updater):
    jenkins.statuses[42] = ExecutorStatus.FAILURE

    async def run_test():
        await create_running(store, build_number=42)
        for _ in range(3):
            await updater.reconcile_once()

        assert jenkins.polled == [42]
        assert len(github.statuses) == 1
        assert github.statuses[0]["state"] == CommitState.FAILURE
        assert github.statuses[0]["description"] == "Build failed ✗"
        assert len(notifier.completed) == 1

    asyncio.run(run_test())


def test_concurrent_cycles_complete_once(store, jenkins, github, notifier, updater):
    jenkins.statuses[42] = ExecutorStatus.SUCCESS

    async def run_test():
        await create_running(store, build_number=42)
        reports = await asyncio.gather(updater.reconcile_once(), updater.reconcile_once())

        assert sum(len(r.completed) for r in reports) == 1
        assert sum(r.skipped for r in reports) == 1
        assert len(notifier.completed) == 1
        assert len(github.statuses) == 1

    asyncio.run(run_test())


def test_duration_measured_with_cycle_clock(store, jenkins, github, notifier):
    jenkins.statuses[42] = ExecutorStatus.SUCCESS
    updater = PipelineStatusUpdater(
        store, jenkins, github, notifier,
        poll_timeout=0.05, side_effect_timeout=0.05,
        clock=lambda: T0 + timedelta(minutes=2),
    )

    async def run_test():
        record = await create_running(store, build_number=42, started_at=T0)
        await updater.reconcile_once()

        saved = await store.get(record.id)
        assert saved.completed_at == T0 + timedelta(minutes=2)
        assert saved.duration == 120.0

    asyncio.run(run_test())


def test_aborted_build(store, jenkins, github, notifier, updater):
    jenkins.statuses[42] = ExecutorStatus.ABORTED

    async def run_test():
        record = await create_running(store, build_number=42)
        await updater.reconcile_once()

        saved = await store.get(record.id)
        assert saved.status == ExecutionStatus.ABORTED
        assert saved.current_stage == "ABORTED"
        assert github.statuses[0]["state"] == CommitState.FAILURE
        assert github.statuses[0]["description"] == "Build aborted"
        assert notifier.completed[0].status == ExecutionStatus.ABORTED

    asyncio.run(run_test())


def test_running_build_reports_pending_and_leaves_record(store, jenkins, github, notifier, updater):
    async def run_test():
        record = await create_running(store, build_number=42)
        before = (await store.get(record.id)).model_dump()

        report = await updater.reconcile_once()
        await updater.reconcile_once()

        assert report.still_running == 1
        assert (await store.get(record.id)).model_dump() == before
        assert len(github.statuses) == 2
        assert all(s["state"] == CommitState.PENDING for s in github.statuses)
        assert github.statuses[0]["description"] == "Build #42 in progress"
        assert notifier.completed == []

    asyncio.run(run_test())


def test_pending_report_skipped_without_commit(store, jenkins, github, updater):
    async def run_test():
        await create_running(store, build_number=42, commit_hash=None)
        report = await updater.reconcile_once()
        assert report.still_running == 1
        assert github.statuses == []

    asyncio.run(run_test())


@pytest.mark.parametrize("executor_status", [ExecutorStatus.PENDING, ExecutorStatus.UNKNOWN])
def test_non_terminal_status_keeps_record_running(
    store, jenkins, github, notifier, updater, executor_status
):
    jenkins.statuses[42] = executor_status

    async def run_test():
        record = await create_running(store, build_number=42)
        report = await updater.reconcile_once()

        assert report.still_running == 1
        assert (await store.get(record.id)).status == ExecutionStatus.RUNNING
        assert [s["state"] for s in github.statuses] == [CommitState.PENDING]
        assert notifier.completed == []

    asyncio.run(run_test())


def test_three_consecutive_poll_timeouts_then_success(store, jenkins, github, notifier, updater):
    jenkins.poll_delay = 1

    async def run_test():
        record = await create_running(store, build_number=42)
        for _ in range(3):
            report = await updater.reconcile_once()
            assert report.retried == 1
            assert (await store.get(record.id)).status == ExecutionStatus.RUNNING

        assert github.statuses == []
        assert notifier.completed == []

        jenkins.poll_delay = 0
        jenkins.statuses[42] = ExecutorStatus.SUCCESS
        report = await updater.reconcile_once()

        assert report.completed == [record.id]
        assert len(github.statuses) == 1
        assert len(notifier.completed) == 1

    asyncio.run(run_test())


def test_failing_record_does_not_block_siblings(store, jenkins, github, notifier, updater):
    jenkins.statuses[41] = RuntimeError("connection reset")
    jenkins.statuses[42] = ExecutorStatus.SUCCESS

    async def run_test():
        broken = await create_running(store, build_number=41, student="Bob")
        healthy = await create_running(store, build_number=42, student="Alice")

        report = await updater.reconcile_once()

        assert report.retried == 1
        assert report.completed == [healthy.id]
        assert (await store.get(broken.id)).status == ExecutionStatus.RUNNING
        assert (await store.get(healthy.id)).status == ExecutionStatus.SUCCESS

    asyncio.run(run_test())


def test_store_write_failure_defers_side_effects():
    store = FlakyStore()
    jenkins, github, notifier = FakeJenkins(), FakeGitHub(), FakeNotifier()
    jenkins.statuses[42] = ExecutorStatus.SUCCESS
    updater = PipelineStatusUpdater(store, jenkins, github, notifier, poll_timeout=0.05, side_effect_timeout=0.05)

    async def run_test():
        record = await create_running(store, build_number=42)
        store.failing_saves = 1

        report = await updater.reconcile_once()
        assert report.errors == 1
        assert (await store.get(record.id)).status == ExecutionStatus.RUNNING
        assert github.statuses == []
        assert notifier.completed == []

        report = await updater.reconcile_once()
        assert report.completed == [record.id]
        assert len(notifier.completed) == 1

    asyncio.run(run_test())


def test_store_read_failure_propagates():
    store = FlakyStore()
    store.fail_listing = True
    updater = PipelineStatusUpdater(store, FakeJenkins(), FakeGitHub(), FakeNotifier())

    async def run_test():
        with pytest.raises(RuntimeError):
            await updater.reconcile_once()

    asyncio.run(run_test())


def test_manual_edit_after_listing_wins():
    store = StaleListingStore()
    jenkins, github, notifier = FakeJenkins(), FakeGitHub(), FakeNotifier()
    jenkins.statuses[42] = ExecutorStatus.SUCCESS
    updater = PipelineStatusUpdater(store, jenkins, github, notifier)

    async def run_test():
        record = await create_running(store, build_number=42)
        report = await updater.reconcile_once()

        assert report.skipped == 1
        assert jenkins.polled == []
        assert (await store.get(record.id)).status == ExecutionStatus.ABORTED
        assert github.statuses == []
        assert notifier.completed == []

    asyncio.run(run_test())


def test_only_running_records_are_polled(store, jenkins, updater):
    async def run_test():
        await store.create(Execution(student_name="Alice", repository_url=REPO_URL))
        failed = await store.create(Execution(student_name="Bob", repository_url=REPO_URL))
        failed.mark_submission_failed("Failed to trigger Jenkins: refused")
        await store.save(failed)

        report = await updater.reconcile_once()
        assert report.in_flight == 0
        assert jenkins.polled == []

    asyncio.run(run_test())


def test_running_record_without_build_number_is_skipped(store, jenkins, updater):
    async def run_test():
        await store.create(Execution(
            student_name="Alice", repository_url=REPO_URL, status=ExecutionStatus.RUNNING
        ))
        report = await updater.reconcile_once()
        assert report.skipped == 1
        assert jenkins.polled == []

    asyncio.run(run_test())


def test_side_effect_failures_do_not_undo_completion(store, jenkins, github, notifier, updater):
    jenkins.statuses[42] = ExecutorStatus.SUCCESS
    github.error = RuntimeError("GitHub 502")
    notifier.error = RuntimeError("Discord down")

    async def run_test():
        record = await create_running(store, build_number=42)
        report = await updater.reconcile_once()

        assert report.completed == [record.id]
        assert (await store.get(record.id)).status == ExecutionStatus.SUCCESS
        assert (await updater.reconcile_once()).in_flight == 0

    asyncio.run(run_test())


def test_slow_commit_status_does_not_block_notification(store, jenkins, github, notifier, updater):
    jenkins.statuses[42] = ExecutorStatus.SUCCESS
    github.delay = 1

    async def run_test():
        await create_running(store, build_number=42)
        await updater.reconcile_once()
        assert github.statuses == []
        assert len(notifier.completed) == 1

    asyncio.run(run_test())


def test_parallelism_is_bounded(store, github, notifier):
    class CountingJenkins(FakeJenkins):
        def __init__(self):
            super().__init__()
            self.active = 0
            self.peak = 0

        async def poll_status(self, build_number, last_known=ExecutorStatus.RUNNING):
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return ExecutorStatus.RUNNING

    jenkins = CountingJenkins()
    updater = PipelineStatusUpdater(store, jenkins, github, notifier, poll_timeout=1, max_parallel=2)

    async def run_test():
        for n in range(1, 6):
            await create_running(store, build_number=n, commit_hash=None)
        report = await updater.reconcile_once()
        assert report.still_running == 5
        assert jenkins.peak == 2

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Fully wired cycle: real clients, mocked HTTP
# ---------------------------------------------------------------------------
def test_alice_build_42_end_to_end():
    requests = {"jenkins": [], "github": [], "discord": []}

    def jenkins_handler(request):
        requests["jenkins"].append(request)
        if request.url.path.endswith("/42/api/json"):
            return httpx.Response(200, json={"building": False, "result": "SUCCESS"})
        if request.url.path.endswith("/42/consoleText"):
            return httpx.Response(200, text="[INFO] BUILD SUCCESS\n")
        return httpx.Response(404)

    def github_handler(request):
        requests["github"].append(request)
        return httpx.Response(201)

    def discord_handler(request):
        requests["discord"].append(request)
        return httpx.Response(204)

    store = ExecutionStore()
    updater = PipelineStatusUpdater(
        store,
        JenkinsClient(
            base_url="http://jenkins.local", job_name="student-cicd-pipeline",
            transport=httpx.MockTransport(jenkins_handler),
        ),
        GitHubStatusReporter(
            github_token="ghp_test", api_url="https://api.github.test",
            transport=httpx.MockTransport(github_handler),
        ),
        NotificationService(
            channels=[DiscordChannel("https://discord.test/api/webhooks/1")],
            transport=httpx.MockTransport(discord_handler),
        ),
    )

    async def run_test():
        record = await create_running(store, build_number=42, commit_hash="abc123")
        await updater.reconcile_once()
        await updater.reconcile_once()

        saved = await store.get(record.id)
        assert saved.status == ExecutionStatus.SUCCESS
        assert saved.current_stage == "COMPLETED"
        assert saved.console_output == "[INFO] BUILD SUCCESS\n"

        assert len(requests["github"]) == 1
        status_call = requests["github"][0]
        assert status_call.url.path == "/repos/alice/java-lab/statuses/abc123"
        body = json.loads(status_call.content)
        assert body["state"] == "success"
        assert body["context"] == "Jenkins CI/CD"
        assert body["target_url"] == "http://jenkins.local/job/student-cicd-pipeline/42/"

        assert len(requests["discord"]) == 1
        assert json.loads(requests["discord"][0].content) == {"content": "✅ Alice build #42 SUCCESS"}
        assert requests["discord"][0].headers["X-Idempotency-Key"] == f"{record.id}:SUCCESS"

    asyncio.run(run_test())
