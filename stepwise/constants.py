"""Shared defaults for the workflow engine."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 1000
DEFAULT_DELAY_MS = 1000
DEFAULT_HTTP_METHOD = "GET"
DEFAULT_WEBHOOK_METHOD = "POST"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_SIGNATURE_HEADER = "x-webhook-signature"

SKIPPED_LOG = "Step skipped due to conditions"
CANCELLED_REASON = "Execution cancelled by user"
INTERRUPTED_REASON = "Execution interrupted before completion"
