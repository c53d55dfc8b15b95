"""
Service wiring
==============
Builds the process-wide collaborators once and hands them to the routers
through FastAPI dependencies. Tests replace the whole graph with
app.dependency_overrides[get_services].
"""
import logging
from typing import Optional

from fastapi import Depends

from pipeline_tracker.agents.status_updater import PipelineStatusUpdater, ReconciliationScheduler
from pipeline_tracker.executor.jenkins_client import JenkinsClient
from pipeline_tracker.services.execution_store import ExecutionStore
from pipeline_tracker.services.github_status import GitHubStatusReporter
from pipeline_tracker.services.notification_service import NotificationService
from pipeline_tracker.services.pipeline_service import PipelineService

logger = logging.getLogger(__name__)


class Services:
    """Container for one consistent set of collaborators."""

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        jenkins: Optional[JenkinsClient] = None,
        github: Optional[GitHubStatusReporter] = None,
        notifier: Optional[NotificationService] = None,
    ) -> None:
        self.store = store or ExecutionStore()
        self.jenkins = jenkins or JenkinsClient()
        self.github = github or GitHubStatusReporter()
        self.notifier = notifier or NotificationService()
        self.pipeline_service = PipelineService(self.store, self.jenkins, self.notifier)
        self.updater = PipelineStatusUpdater(
            self.store, self.jenkins, self.github, self.notifier
        )
        self.scheduler = ReconciliationScheduler(self.updater)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
        logger.info(
            "Services initialised (Jenkins job=%s, %d notification channel(s))",
            _services.jenkins.job_name, len(_services.notifier.channels),
        )
    return _services


def get_pipeline_service(services: Services = Depends(get_services)) -> PipelineService:
    return services.pipeline_service


def get_github_reporter(services: Services = Depends(get_services)) -> GitHubStatusReporter:
    return services.github


def get_scheduler(services: Services = Depends(get_services)) -> ReconciliationScheduler:
    return services.scheduler
