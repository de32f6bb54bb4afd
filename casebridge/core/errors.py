"""Error taxonomy shared by the reconciliation engine."""

from typing import Optional


class SyncError(Exception):
    """Base class for reconciliation engine errors."""


class ConfigurationError(SyncError):
    """Field-mapping metadata is missing, invalid or unreadable."""


class RemoteApiError(SyncError):
    """The remote work-item service answered with a non-2xx status (or not at all)."""

    def __init__(self, status_code: Optional[int], body: str, message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        if message is None:
            if status_code is None:
                message = f"Remote request failed: {body}"
            else:
                message = f"Remote request failed with HTTP {status_code}"
        super().__init__(message)


class StorePermissionError(SyncError, PermissionError):
    """The caller may not create or update records in the local store."""


class PersistenceError(SyncError):
    """A local write failed; ``cause`` carries the lower-level exception."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
