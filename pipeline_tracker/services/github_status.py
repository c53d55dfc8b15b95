"""
GitHub Status Reporter
======================
Posts commit-level status markers (the green / red check next to a commit)
through the GitHub REST API.

Best-effort contract:
    - Every failure is logged and swallowed
    - report_commit_status() returns True only when GitHub accepted the status
    - Never raises into the reconciliation step that called it
"""
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from pipeline_tracker.core.config import (
    GITHUB_API_URL,
    GITHUB_TOKEN,
    JENKINS_CONTEXT,
    SIDE_EFFECT_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

# GitHub rejects descriptions longer than this
_MAX_DESCRIPTION = 140


class CommitState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


def extract_repo_path(repo_url: str) -> str:
    """Extract 'owner/repo' from a GitHub URL ('' when it is not one)."""
    match = re.search(r"github\.com[:/](.+?)(?:\.git)?/?$", repo_url.strip())
    if not match:
        return ""
    path = match.group(1).rstrip("/")
    return path if path.count("/") == 1 else ""


class GitHubStatusReporter:
    """
    Service responsible for mirroring execution progress onto commits.
    """

    def __init__(
        self,
        github_token: Optional[str] = GITHUB_TOKEN,
        api_url: str = GITHUB_API_URL,
        context: str = JENKINS_CONTEXT,
        timeout: float = SIDE_EFFECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.github_token = github_token or ""
        self.api_url = api_url.rstrip("/")
        self.context = context
        self.timeout = timeout
        self._transport = transport
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "Pipeline-Status-Tracker",
        }
        if self.github_token:
            self.headers["Authorization"] = f"Bearer {self.github_token}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self.headers, timeout=self.timeout, transport=self._transport
        )

    async def report_commit_status(
        self,
        repo_url: str,
        commit_sha: str,
        state: CommitState,
        description: str,
        target_url: str = "",
    ) -> bool:
        """
        Update the commit status on GitHub.

        Parameters
        ----------
        repo_url : str
            Repository locator, e.g. https://github.com/owner/repo.git
        commit_sha : str
            Commit to decorate.
        state : CommitState
            pending / success / failure / error.
        description : str
            Short human-readable text (truncated to 140 chars).
        target_url : str
            Link to the Jenkins build.

        Returns
        -------
        bool
            True if GitHub answered 201 Created.
        """
        if not self.github_token:
            logger.debug("GITHUB_TOKEN not set, skipping commit status for %s", commit_sha)
            return False

        repo_path = extract_repo_path(repo_url)
        if not repo_path or not commit_sha:
            logger.warning("Invalid GitHub URL format or missing commit: %s", repo_url)
            return False

        state = CommitState(state)
        payload: Dict[str, Any] = {
            "state": state.value,
            "description": description[:_MAX_DESCRIPTION],
            "context": self.context,
        }
        if target_url:
            payload["target_url"] = target_url

        url = f"{self.api_url}/repos/{repo_path}/statuses/{commit_sha}"
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
        except Exception as e:
            logger.error("Failed to update GitHub commit status: %s", e)
            return False

        if response.status_code == 201:
            logger.info("GitHub commit status updated: %s - %s", state.value, description)
            return True

        logger.warning("GitHub API returned status %d: %s", response.status_code, response.text)
        return False

    async def get_recent_commits(self, repo_url: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Fetch the last ``limit`` commits of a repository ([] on any failure)."""
        repo_path = extract_repo_path(repo_url)
        if not repo_path:
            return []

        url = f"{self.api_url}/repos/{repo_path}/commits"
        try:
            async with self._client() as client:
                response = await client.get(url, params={"per_page": limit})
            if response.status_code != 200:
                logger.warning("Failed to fetch commits. Status: %d", response.status_code)
                return []
            data = response.json()
        except Exception as e:
            logger.error("Error fetching commits: %s", e)
            return []
        return data if isinstance(data, list) else []
