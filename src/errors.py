class PipelineError(Exception):
    """Base for everything the ingestion pipeline raises on purpose."""


class UpstreamError(PipelineError):
    """Spotify answered with something we can't use. Not retried."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RateLimitError(UpstreamError):
    """HTTP 429. `retry_after` is the Retry-After hint in seconds, if any."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class TransientUpstreamError(UpstreamError):
    """5xx or network trouble, retried the same way as throttling."""


class RetriesExhaustedError(PipelineError):
    def __init__(self, attempts: int, last_error: Exception | None):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class AuthError(PipelineError):
    """Refreshing the access token failed or there is no stored credential."""


class PersistenceError(PipelineError):
    pass


class DuplicateKeyError(PersistenceError):
    """Row with the same natural key already stored."""
