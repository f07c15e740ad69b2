"""
Shared constants for workspace-gate.

Centralises values that are used across multiple modules to avoid duplication
and ensure consistency.
"""

# ── Retry defaults ──────────────────────────────────────────────────────────────
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000
DEFAULT_JITTER_FACTOR = 0.1
DEFAULT_RETRIABLE_CODES = frozenset({429, 500, 502, 503, 504})

# Structured upstream reasons that are worth retrying whatever the status says
RETRYABLE_REASONS = frozenset({
    "rateLimitExceeded",
    "quotaExceeded",
    "backendError",
    "internalServerError",
})

# Valid range for anything we treat as an HTTP status
MIN_HTTP_STATUS = 100
MAX_HTTP_STATUS = 599

DEFAULT_HTTP_STATUS = 500
UNKNOWN_ERROR_MESSAGE = "Unknown error occurred"


# ── Access control ──────────────────────────────────────────────────────────────
WORKSPACE_SERVICES = ("sheets", "docs", "calendar", "drive")

TOOL_NAME_PREFIX = "google-workspace"

# Guard against parent cycles and pathological Drive trees
MAX_FOLDER_DEPTH = 64


# ── Environment variable names ──────────────────────────────────────────────────
ENV_RETRY_MAX_ATTEMPTS = "GOOGLE_RETRY_MAX_ATTEMPTS"
ENV_RETRY_BASE_DELAY = "GOOGLE_RETRY_BASE_DELAY"
ENV_RETRY_MAX_DELAY = "GOOGLE_RETRY_MAX_DELAY"
ENV_RETRY_JITTER = "GOOGLE_RETRY_JITTER"
ENV_RETRY_RETRIABLE_CODES = "GOOGLE_RETRY_RETRIABLE_CODES"
ENV_REQUEST_TIMEOUT = "GOOGLE_REQUEST_TIMEOUT"
ENV_TOTAL_TIMEOUT = "GOOGLE_TOTAL_TIMEOUT"

ENV_DRIVE_FOLDER_ID = "GOOGLE_DRIVE_FOLDER_ID"
ENV_ALLOW_WRITES_OUTSIDE_FOLDER = "GOOGLE_ALLOW_WRITES_OUTSIDE_FOLDER"
ENV_ALLOWED_WRITE_SERVICES = "GOOGLE_ALLOWED_WRITE_SERVICES"
ENV_ALLOWED_WRITE_TOOLS = "GOOGLE_ALLOWED_WRITE_TOOLS"
ENV_READ_ONLY_MODE = "GOOGLE_READ_ONLY_MODE"


# ── Standardised error messages ─────────────────────────────────────────────────
ERROR_MESSAGES = {
    "read_only_mode": "Write operations are disabled: the server is running in read-only mode.",
    "service_restricted": "Write operations are not allowed for this service.",
    "tool_restricted": "This tool is not in the list of allowed write tools.",
    "folder_restricted": "Writes are only allowed inside the configured Drive folder.",
    "folder_hierarchy": "Could not verify the folder hierarchy with Google Drive.",
    "google_not_configured": "Google Workspace credentials are not configured.",
    "retries_exhausted": "The Google API call failed after all retry attempts.",
    "cancelled": "Operation cancelled.",
}
