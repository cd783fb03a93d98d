"""Exceptions raised by magpie.

Per-item outcomes inside a pipeline run are values, not exceptions.
These are reserved for setup-fatal conditions, provider failures that
callers may retry, and rejected rollbacks.
"""


class MagpieError(Exception):
    """Base exception for all magpie errors."""


class ProviderError(MagpieError):
    """A mail provider call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ProviderError):
    """Credentials were rejected by the mail provider."""


class RateLimitError(ProviderError):
    """Mail provider rate limit exceeded."""


class LabelSetupError(MagpieError):
    """Taxonomy labels could not be listed or created on the provider."""


class OperationNotFoundError(MagpieError):
    """No operation history entry with the requested id."""


class RollbackConflictError(MagpieError):
    """Rollback was rejected; the entry is left untouched."""
