"""
Error taxonomy for the sync engine.

Every error a caller can see derives from DataHubError so HTTP handlers and
the scheduler can catch one base type. Provider and store failures are
terminal for a single sync run; retrying is the caller's decision.
"""
from typing import Optional


class DataHubError(RuntimeError):
    """Base class for sync-engine errors."""


class TokenExchangeFailed(DataHubError):
    """Raised when Clio rejects (or never answers) a refresh-token grant."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class MissingCredentials(TokenExchangeFailed):
    """Raised when a principal has no complete client id/secret/refresh-token triple."""


class OperationInFlight(DataHubError):
    """Raised when a sync for the same operation key is already running."""

    def __init__(self, operation_key: str):
        super().__init__(f"Operation {operation_key} is already running")
        self.operation_key = operation_key


class ProviderFetchError(DataHubError):
    """Raised on a transport error or non-2xx answer while reading from Clio."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LocalStoreError(DataHubError):
    """Raised when a local-store query or transaction fails."""


class AbortedByUser(DataHubError):
    """Raised at a checkpoint once an abort was requested for the running operation."""

    def __init__(self, operation_key: str):
        super().__init__(f"Operation {operation_key} cancelled by user")
        self.operation_key = operation_key


class DriftUnavailable(DataHubError):
    """Raised internally when Clio offers no cheap aggregate for a dataset."""
