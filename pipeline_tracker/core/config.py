"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    JENKINS_URL                 — Base URL of the Jenkins server (default: http://localhost:8081)
    JENKINS_USERNAME            — Jenkins user for Basic auth (default: admin)
    JENKINS_API_TOKEN           — Jenkins API token for Basic auth
    JENKINS_JOB_NAME            — Parameterised job triggered per execution
    JENKINS_CONTEXT             — Context label shown next to GitHub commit statuses
    GITHUB_TOKEN                — Required for posting commit statuses
    DISCORD_WEBHOOK_URL         — Optional Discord channel for notifications
    NOTIFICATION_CHANNELS_FILE  — Optional YAML file listing extra webhook channels
    RECONCILER_ENABLED          — Start the status reconciliation loop with the API (default: true)

Reconciliation Cadence:
    RECONCILE_INTERVAL_SECONDS is the fixed delay between the end of one
    reconciliation cycle and the start of the next. A cycle never overlaps
    the next one; RECONCILE_CYCLE_TIMEOUT_SECONDS caps a single cycle so a
    stuck cycle cannot starve the scheduler.

External Call Timeouts:
    Every call to Jenkins, GitHub or a webhook is bounded. EXECUTOR_TIMEOUT_SECONDS
    applies to Jenkins, SIDE_EFFECT_TIMEOUT_SECONDS to commit statuses and
    notifications. A timed out poll leaves the execution RUNNING for the next cycle.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Jenkins (build executor)
JENKINS_URL = os.getenv("JENKINS_URL", "http://localhost:8081").rstrip("/")
JENKINS_USERNAME = os.getenv("JENKINS_USERNAME", "admin")
JENKINS_API_TOKEN = os.getenv("JENKINS_API_TOKEN", "")
JENKINS_JOB_NAME = os.getenv("JENKINS_JOB_NAME", "student-cicd-pipeline")
JENKINS_CONTEXT = os.getenv("JENKINS_CONTEXT", "Jenkins CI/CD")

# Build number resolution after a trigger (queue item polling)
QUEUE_POLL_ATTEMPTS = int(os.getenv("QUEUE_POLL_ATTEMPTS", 10))
QUEUE_POLL_INTERVAL_SECONDS = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", 1.0))

# GitHub (source-control status reporter)
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")

# Notifications
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
NOTIFICATION_CHANNELS_FILE = os.getenv("NOTIFICATION_CHANNELS_FILE", "")

# Reconciliation loop
RECONCILER_ENABLED = os.getenv("RECONCILER_ENABLED", "true").lower() == "true"
RECONCILE_INTERVAL_SECONDS = float(os.getenv("RECONCILE_INTERVAL_SECONDS", 5))
RECONCILE_CYCLE_TIMEOUT_SECONDS = float(os.getenv("RECONCILE_CYCLE_TIMEOUT_SECONDS", 60))
RECONCILE_MAX_PARALLEL = int(os.getenv("RECONCILE_MAX_PARALLEL", 4))

# Timeouts for external calls (seconds)
EXECUTOR_TIMEOUT_SECONDS = float(os.getenv("EXECUTOR_TIMEOUT_SECONDS", 10))
SIDE_EFFECT_TIMEOUT_SECONDS = float(os.getenv("SIDE_EFFECT_TIMEOUT_SECONDS", 10))

# HTTP API
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(",")
    if origin.strip()
]
LOG_DIR = os.getenv("LOG_DIR", "logs")

SERVICE_NAME = "Student CI/CD Lab"
SERVICE_VERSION = "1.0.0"
