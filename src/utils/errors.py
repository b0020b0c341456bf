"""
Error taxonomy for the webhook pipeline.

Ingress errors are mapped to HTTP status codes by the webhook endpoint.
Processing errors never reach the original sender; they drive the queue's
retry / dead-letter decisions instead.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    error_code = "pipeline_error"


# --- Ingress ---

class AuthenticationFailure(PipelineError):
    """Unknown source, unknown token, or revoked credential. Never says which."""

    error_code = "unauthorized"


class ValidationFailure(PipelineError):
    """Malformed payload: bad JSON, wrong content type, missing fields."""

    error_code = "invalid_payload"


class PayloadTooLarge(ValidationFailure):
    """Body exceeds the configured ceiling."""

    error_code = "payload_too_large"


class SourceConflict(ValidationFailure):
    """The source_id is already owned by another project."""

    error_code = "source_conflict"


class RateLimited(PipelineError):
    """Source or client IP exceeded its sliding-window allowance."""

    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Rate limit exceeded"):
        super().__init__(message)
        self.retry_after = retry_after


# --- Processing ---

class TransientProcessingFailure(PipelineError):
    """Retryable: storage hiccup, upstream unavailable, timeout."""

    error_code = "transient_failure"


class PermanentProcessingFailure(PipelineError):
    """The event can never succeed (e.g. project deleted). Dead-letter immediately."""

    error_code = "permanent_failure"


class DeliveryExhausted(PipelineError):
    """Retry ceiling reached; the event was moved to the dead-letter state."""

    error_code = "delivery_exhausted"

    def __init__(self, event_id: str, attempts: int, last_error: Optional[str] = None):
        super().__init__(f"Event {event_id[:8]} exhausted {attempts} attempts: {last_error}")
        self.event_id = event_id
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(TransientProcessingFailure):
    """Upstream circuit is open; the call was not attempted."""

    error_code = "circuit_open"

    def __init__(self, name: str, retry_after: Optional[int] = None):
        super().__init__(f"Circuit '{name}' is open")
        self.name = name
        self.retry_after = retry_after


class LeaseLostError(PipelineError):
    """The caller's lease expired and the event was claimed by another worker."""

    error_code = "lease_lost"
