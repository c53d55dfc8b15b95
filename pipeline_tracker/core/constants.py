"""
Constants
Centralised storage for stage labels, commit status wording and notification markers.
"""
STAGE_INITIALIZED = "INITIALIZED"
STAGE_CHECKOUT = "CHECKOUT"

# Stage label written on the terminal transition, keyed by final status value
TERMINAL_STAGE_LABELS = {
    "SUCCESS": "COMPLETED",
    "FAILURE": "FAILED",
    "ABORTED": "ABORTED",
}

DEFAULT_BRANCH = "main"

# GitHub commit status descriptions
COMMIT_DESCRIPTION_SUCCESS = "All checks passed ✓"
COMMIT_DESCRIPTION_FAILURE = "Build failed ✗"
COMMIT_DESCRIPTION_ABORTED = "Build aborted"
COMMIT_DESCRIPTION_PENDING = "Build #{build_number} in progress"

CONSOLE_PLACEHOLDER = "Console output not available"
SUBMISSION_ERROR_PREFIX = "Failed to trigger Jenkins:"

EMOJI_SUCCESS = "✅"
EMOJI_FAILURE = "❌"
EMOJI_STARTED = "\U0001f680"
EMOJI_BELL = "\U0001f514"
