"""
Jenkins Client
==============
Thin protocol adapter between the tracker and the Jenkins REST API.

BOUNDARY RULES:
    - Client ONLY talks to Jenkins.
    - Client NEVER touches the execution store.
    - Client NEVER decides state transitions; it reports what Jenkins says.

OPERATIONS:
    submit()       — trigger job/<name>/buildWithParameters and resolve the real build number
    poll_status()  — read job/<name>/<n>/api/json and decode it into ExecutorStatus
    fetch_log()    — read job/<name>/<n>/consoleText (best-effort)

BUILD NUMBER RESOLUTION:
    Jenkins answers a trigger with a queue item (Location header), not a build.
    The queue item is polled until it carries executable.number. If Jenkins
    does not resolve it within QUEUE_POLL_ATTEMPTS, the job's nextBuildNumber
    read just before the trigger is used instead.

FAILURE CONTRACT:
    - submit() raises ExecutorUnreachable (network / timeout) or ExecutorRejected (non-2xx)
    - poll_status() returns the caller's last known status on transient failure
    - fetch_log() returns a placeholder string on any failure
"""
import asyncio
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from pipeline_tracker.core.config import (
    EXECUTOR_TIMEOUT_SECONDS,
    JENKINS_API_TOKEN,
    JENKINS_JOB_NAME,
    JENKINS_URL,
    JENKINS_USERNAME,
    QUEUE_POLL_ATTEMPTS,
    QUEUE_POLL_INTERVAL_SECONDS,
)
from pipeline_tracker.core.constants import CONSOLE_PLACEHOLDER
from pipeline_tracker.core.errors import ExecutorRejected, ExecutorUnreachable
from pipeline_tracker.models.execution import ExecutorStatus
from pipeline_tracker.models.pipeline_request import PipelineRequest

logger = logging.getLogger(__name__)

# Jenkins "result" values → ExecutorStatus. Anything else decodes to UNKNOWN.
_RESULT_MAP = {
    "SUCCESS": ExecutorStatus.SUCCESS,
    "FAILURE": ExecutorStatus.FAILURE,
    "UNSTABLE": ExecutorStatus.FAILURE,
    "ABORTED": ExecutorStatus.ABORTED,
}


def decode_build_status(payload: Any) -> ExecutorStatus:
    """
    Decode a Jenkins build JSON document into an ExecutorStatus.

    - building == true           → RUNNING
    - result in _RESULT_MAP      → mapped terminal status
    - result is null (not done)  → PENDING
    - anything else              → UNKNOWN
    """
    if not isinstance(payload, dict):
        return ExecutorStatus.UNKNOWN

    if payload.get("building") is True:
        return ExecutorStatus.RUNNING

    result = payload.get("result")
    if result is None:
        return ExecutorStatus.PENDING
    if not isinstance(result, str):
        return ExecutorStatus.UNKNOWN

    status = _RESULT_MAP.get(result.upper())
    if status is None:
        logger.warning("Unrecognised Jenkins result %r, decoding as UNKNOWN", result)
        return ExecutorStatus.UNKNOWN
    return status


def job_path(job_name: str) -> str:
    """Folder-aware job path: 'team/app' → '/job/team/job/app'."""
    parts = [p for p in job_name.split("/") if p]
    return "".join(f"/job/{quote(p, safe='')}" for p in parts)


class JenkinsClient:
    """
    Async client for one parameterised Jenkins job.
    """

    def __init__(
        self,
        base_url: str = JENKINS_URL,
        job_name: str = JENKINS_JOB_NAME,
        username: str = JENKINS_USERNAME,
        api_token: str = JENKINS_API_TOKEN,
        timeout: float = EXECUTOR_TIMEOUT_SECONDS,
        queue_poll_attempts: int = QUEUE_POLL_ATTEMPTS,
        queue_poll_interval: float = QUEUE_POLL_INTERVAL_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.job_name = job_name
        self.job_path = job_path(job_name)
        self.timeout = timeout
        self.queue_poll_attempts = queue_poll_attempts
        self.queue_poll_interval = queue_poll_interval
        self._auth = httpx.BasicAuth(username, api_token)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=self._auth,
            timeout=self.timeout,
            transport=self._transport,
            headers={"User-Agent": "Pipeline-Status-Tracker"},
        )

    def build_url(self, build_number: int) -> str:
        return f"{self.base_url}{self.job_path}/{build_number}/"

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    async def submit(self, request: PipelineRequest) -> int:
        """
        Trigger a build for ``request`` and return its Jenkins build number.

        Raises
        ------
        ExecutorUnreachable
            Jenkins could not be reached or timed out.
        ExecutorRejected
            Jenkins answered with a non-2xx status, or the queued build was
            cancelled, or no build number could be resolved at all.
        """
        params = {
            "REPO_URL": request.repository_url,
            "BRANCH": request.branch,
            "STUDENT_NAME": request.student_name,
        }
        if request.commit_hash:
            params["COMMIT_HASH"] = request.commit_hash

        logger.info("Triggering Jenkins build for job: %s", self.job_name)

        async with self._client() as client:
            try:
                fallback_number = await self._next_build_number(client)
                response = await client.post(
                    f"{self.job_path}/buildWithParameters", params=params
                )
            except httpx.RequestError as exc:
                raise ExecutorUnreachable(
                    f"Jenkins not reachable at {self.base_url}: {exc}"
                ) from exc

            if response.status_code not in (200, 201):
                raise ExecutorRejected(
                    f"Jenkins returned status code {response.status_code}",
                    status_code=response.status_code,
                )

            build_number = await self._resolve_queue_item(
                client, response.headers.get("Location")
            )

        if build_number is not None:
            logger.info("Jenkins build triggered successfully. Build number: %d", build_number)
            return build_number

        if fallback_number is None:
            raise ExecutorRejected("Jenkins accepted the build but no build number could be resolved")

        logger.warning(
            "Queue item did not resolve, falling back to nextBuildNumber=%d", fallback_number
        )
        return fallback_number

    async def _next_build_number(self, client: httpx.AsyncClient) -> Optional[int]:
        response = await client.get(
            f"{self.job_path}/api/json", params={"tree": "nextBuildNumber"}
        )
        if response.status_code == 404:
            raise ExecutorRejected(f"Jenkins job '{self.job_name}' not found", status_code=404)
        if response.status_code != 200:
            logger.warning("Could not read nextBuildNumber (HTTP %d)", response.status_code)
            return None
        try:
            value = response.json().get("nextBuildNumber")
        except ValueError:
            return None
        return value if isinstance(value, int) else None

    async def _resolve_queue_item(
        self, client: httpx.AsyncClient, location: Optional[str]
    ) -> Optional[int]:
        if not location:
            return None

        queue_api = f"{location.rstrip('/')}/api/json"
        for attempt in range(1, self.queue_poll_attempts + 1):
            try:
                response = await client.get(queue_api)
                if response.status_code == 200:
                    item = response.json()
                    if item.get("cancelled"):
                        raise ExecutorRejected("Queued build was cancelled in Jenkins")
                    executable = item.get("executable") or {}
                    number = executable.get("number")
                    if isinstance(number, int):
                        return number
                else:
                    logger.debug("Queue item poll returned HTTP %d", response.status_code)
            except (httpx.RequestError, ValueError) as exc:
                logger.warning("Queue item poll %d failed: %s", attempt, exc)

            if attempt < self.queue_poll_attempts:
                await asyncio.sleep(self.queue_poll_interval)
        return None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    async def poll_status(
        self,
        build_number: int,
        last_known: ExecutorStatus = ExecutorStatus.RUNNING,
    ) -> ExecutorStatus:
        """
        Ask Jenkins for the current state of ``build_number``.

        A network failure, timeout or 5xx answer returns ``last_known`` so a
        single failed poll never regresses what the caller sees.
        """
        url = f"{self.job_path}/{build_number}/api/json"
        try:
            async with self._client() as client:
                response = await client.get(url, params={"tree": "building,result"})
        except httpx.RequestError as exc:
            logger.warning(
                "Transient poll failure for build #%d (%s), keeping %s",
                build_number, exc, last_known.value,
            )
            return last_known

        if response.status_code == 404:
            # Not started yet: still waiting in the queue
            return ExecutorStatus.PENDING
        if response.status_code >= 500:
            logger.warning(
                "Jenkins returned HTTP %d for build #%d, keeping %s",
                response.status_code, build_number, last_known.value,
            )
            return last_known
        if response.status_code != 200:
            logger.warning(
                "Unexpected HTTP %d polling build #%d", response.status_code, build_number
            )
            return ExecutorStatus.UNKNOWN

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Build #%d returned a non-JSON body", build_number)
            return ExecutorStatus.UNKNOWN
        return decode_build_status(payload)

    async def fetch_log(self, build_number: int) -> str:
        """Console output of ``build_number``; placeholder text on any failure."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.job_path}/{build_number}/consoleText")
            if response.status_code == 200:
                return response.text
            logger.warning(
                "Console output for build #%d unavailable (HTTP %d)",
                build_number, response.status_code,
            )
        except httpx.HTTPError as exc:
            logger.error("Error fetching console output for build #%d: %s", build_number, exc)
        return CONSOLE_PLACEHOLDER
