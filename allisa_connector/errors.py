"""Error taxonomy for the sync pipeline.

Per-record errors (ValidationError, TargetRetryable, TargetPermanent) are
contained at the record level. Per-batch errors (SourceUnavailable,
SourceDataError) abort the current cycle. StateStoreError is fatal.
"""

from typing import Optional

__all__ = [
    "ConnectorError",
    "ConfigError",
    "SourceUnavailable",
    "SourceDataError",
    "ValidationError",
    "TargetRetryable",
    "TargetPermanent",
    "StateStoreError",
]


class ConnectorError(Exception):
    """Base class for connector errors with a user-facing message."""

    pass


class ConfigError(ConnectorError):
    """Missing or invalid configuration."""

    pass


class SourceUnavailable(ConnectorError):
    """WiseTime could not be reached or refused our credentials."""

    pass


class SourceDataError(ConnectorError):
    """WiseTime returned a payload we cannot parse."""

    pass


class ValidationError(ConnectorError):
    """A posting is missing fields required by Allisa."""

    pass


class TargetRetryable(ConnectorError):
    """Transient Allisa failure (rate limit, 5xx, network)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class TargetPermanent(ConnectorError):
    """Allisa rejected the record and will keep rejecting it."""

    pass


class StateStoreError(ConnectorError):
    """Persisted connector state could not be read or written."""

    pass
