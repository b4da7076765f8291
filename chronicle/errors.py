"""
Shared error types for Chronicle services.

ValidationError and NotFoundError are terminal: callers see them and the
event bus never retries them. TransientCapabilityError and PersistenceError
are retryable.
"""


class ValidationError(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.data = data


class NotFoundError(LookupError):
    def __init__(self, message: str, entity_id: str | None = None):
        super().__init__(message)
        self.entity_id = entity_id


class TransientCapabilityError(RuntimeError):
    """Raised when the AI, embedding, or notification provider is unavailable."""

    def __init__(self, message: str, capability: str = "unknown"):
        super().__init__(message)
        self.capability = capability


class PersistenceError(RuntimeError):
    """Raised when the durable store is unavailable; the write was rolled back."""


RETRYABLE_ERRORS = (TransientCapabilityError, PersistenceError)
TERMINAL_ERRORS = (ValidationError, NotFoundError)
