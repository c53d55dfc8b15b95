"""
Shared fakes for the tracker tests.
No real Jenkins, GitHub or webhook traffic leaves the test process.
"""
import asyncio

import pytest

from pipeline_tracker.agents.status_updater import PipelineStatusUpdater
from pipeline_tracker.models.execution import Execution, ExecutorStatus
from pipeline_tracker.services.execution_store import ExecutionStore

REPO_URL = "https://github.com/alice/java-lab.git"
JENKINS_BASE = "http://jenkins.local"


class FakeJenkins:
    """Scripted stand-in for JenkinsClient."""

    def __init__(self, build_number=42, submit_error=None):
        self.build_number = build_number
        self.submit_error = submit_error
        self.statuses = {}
        self.default_status = ExecutorStatus.RUNNING
        self.poll_delay = 0
        self.log = "BUILD SUCCESSFUL"
        self.submitted = []
        self.polled = []
        self.job_name = "student-cicd-pipeline"

    async def submit(self, request):
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return self.build_number

    async def poll_status(self, build_number, last_known=ExecutorStatus.RUNNING):
        self.polled.append(build_number)
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        result = self.statuses.get(build_number, self.default_status)
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_log(self, build_number):
        return self.log

    def build_url(self, build_number):
        return f"{JENKINS_BASE}/job/{self.job_name}/{build_number}/"


class FakeGitHub:
    def __init__(self):
        self.statuses = []
        self.commits = []
        self.delay = 0
        self.error = None

    async def report_commit_status(self, repo_url, commit_sha, state, description, target_url=""):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.statuses.append({
            "repo_url": repo_url,
            "sha": commit_sha,
            "state": state,
            "description": description,
            "target_url": target_url,
        })
        return True

    async def get_recent_commits(self, repo_url, limit=5):
        return self.commits[:limit]


class FakeNotifier:
    def __init__(self):
        self.channels = []
        self.started = []
        self.completed = []
        self.error = None

    async def pipeline_started(self, execution):
        self.started.append(execution)
        return 0

    async def pipeline_completed(self, execution):
        if self.error is not None:
            raise self.error
        self.completed.append(execution)
        return 1


async def create_running(store, build_number=42, student="Alice", commit_hash="abc123", **fields):
    """Store a record the way a successful submission leaves it."""
    record = await store.create(Execution(
        student_name=student,
        repository_url=REPO_URL,
        commit_hash=commit_hash,
        **fields,
    ))
    record.mark_running(build_number)
    return await store.save(record)


@pytest.fixture
def store():
    return ExecutionStore()


@pytest.fixture
def jenkins():
    return FakeJenkins()


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def updater(store, jenkins, github, notifier):
    return PipelineStatusUpdater(
        store, jenkins, github, notifier,
        poll_timeout=0.05,
        side_effect_timeout=0.05,
        max_parallel=4,
    )
