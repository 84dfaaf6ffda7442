"""Exception types shared across the cache engine."""


class ConfigurationError(Exception):
    """Raised when application configuration is invalid or missing."""

    pass


class RelationshipConfigError(Exception):
    """Raised when a relationship definition cannot be used.

    Fatal for the relationship being processed; the coordinator moves on to
    the next relationship.
    """

    def __init__(self, relationship: str, message: str):
        self.relationship = relationship
        super().__init__(f"Relationship '{relationship}': {message}")


class IndexBootstrapError(Exception):
    """Raised when the report index or the sync state index cannot be created."""

    pass


class FetchError(Exception):
    """Raised when the FHIR server cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None, url: str | None = None):
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class CursorExpiredError(FetchError):
    """Raised when a paging cursor returned by the FHIR server has expired."""

    pass


class StoreError(Exception):
    """Raised when Elasticsearch rejects a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientStoreError(StoreError):
    """Store error that is expected to clear up when the request is repeated."""

    pass


class VersionConflictError(TransientStoreError):
    """Elasticsearch answered 409: a concurrent write changed the documents."""

    pass


class RateLimitedError(TransientStoreError):
    """Elasticsearch answered 429: too many requests or script compilations."""

    pass


class RetryExhaustedError(Exception):
    """Raised when a retried operation keeps failing after the last attempt."""

    def __init__(self, function: str, attempts: int, last_error: Exception):
        self.function = function
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{function} failed after {attempts} attempts: {last_error}")
