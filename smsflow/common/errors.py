"""Error taxonomy shared by the pipeline services.

Provider failures carry an `ErrorClass` tag instead of a mutable
"is transient" flag; callers branch on `error.classification`.
"""

from enum import Enum


class PipelineError(Exception):
    """Base class for expected pipeline failures."""

    code = "pipeline_error"


class NotFound(PipelineError):
    code = "not_found"


class DuplicateEvent(PipelineError):
    """Webhook already seen; callers treat this as success."""

    code = "duplicate_event"

    def __init__(self, dedupe_key: str) -> None:
        super().__init__(f"duplicate event {dedupe_key}")
        self.dedupe_key = dedupe_key


class StorageConflict(PipelineError):
    """Unique-constraint or compare-and-swap conflict in storage."""

    code = "storage_conflict"


class InvalidStatusTransition(PipelineError):
    code = "invalid_status_transition"

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {new}")
        self.current = current
        self.new = new


class PoolExhausted(PipelineError):
    code = "pool_exhausted"

    def __init__(self, pool_id: str, available: int, needed: int) -> None:
        super().__init__(f"pool {pool_id} has {available} codes available, {needed} needed")
        self.pool_id = pool_id
        self.available = available
        self.needed = needed


class ReservationExpired(PipelineError):
    code = "reservation_expired"


class UnknownTopicError(PipelineError):
    code = "unknown_topic"


class DeliveryDeferred(PipelineError):
    """Raised to hand a send back to the queue-level retry policy."""

    code = "delivery_deferred"


class QueryTimeout(PipelineError):
    code = "query_timeout"


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProviderError(PipelineError):
    """Classified failure returned by the SMS provider client."""

    classification: ErrorClass = ErrorClass.TRANSIENT
    default_error_code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or (f"http_{status_code}" if status_code else self.default_error_code)
        self.attempts = attempts

    @property
    def is_transient(self) -> bool:
        return self.classification is ErrorClass.TRANSIENT


class TransientProviderError(ProviderError):
    classification = ErrorClass.TRANSIENT
    code = "transient_provider_error"
    default_error_code = "provider_unavailable"


class PermanentProviderError(ProviderError):
    classification = ErrorClass.PERMANENT
    code = "permanent_provider_error"
    default_error_code = "provider_rejected"
