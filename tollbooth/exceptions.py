"""Custom exceptions for the rate limiter."""


class RateLimiterError(Exception):
    """Base class for rate limiter exceptions.

    All custom exceptions inherit from this class so callers can catch
    every library failure with a single except clause.
    """

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(RateLimiterError):
    """Raised when the limiter or a storage provider is misconfigured.

    Always raised at construction time and never swallowed, since it
    indicates a persistent problem rather than a transient one.
    """

    def __init__(self, field: str, value: object, detail: str | None = None):
        self.field = field
        self.value = value
        message = detail or f"Invalid value for {field}: {value!r}"
        super().__init__(message)


class KeyExtractionError(RateLimiterError):
    """Raised when an identifier cannot be derived from a request source."""

    def __init__(self, detail: str = "Unable to determine rate limit key"):
        self.detail = detail
        super().__init__(detail)


class StorageError(RateLimiterError):
    """Raised by a strict storage provider when its backend fails.

    The original backend exception is available through ``__cause__``.
    """

    def __init__(self, operation: str, key: str | None = None, detail: str | None = None):
        self.operation = operation
        self.key = key
        message = detail or f"Storage operation '{operation}' failed"
        if key is not None:
            message += f" for key {key!r}"
        super().__init__(message)


class UnsupportedOperationError(RateLimiterError):
    """Raised when an optional storage operation is not declared by a provider."""

    def __init__(self, provider: str, operation: str):
        self.provider = provider
        self.operation = operation
        super().__init__(f"{provider} does not support '{operation}'")
