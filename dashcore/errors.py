# dashcore/errors.py
from typing import Any, List, Optional


class DashboardError(Exception):
    """Base class for every error raised by the data core."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFound(DashboardError):
    def __init__(self, path: str, record_id: str):
        super().__init__(f"Record '{record_id}' not found at '{path}'")
        self.path = path
        self.record_id = record_id


class Conflict(DashboardError):
    def __init__(self, path: str, record_id: str):
        super().__init__(f"Record '{record_id}' already exists at '{path}'")
        self.path = path
        self.record_id = record_id


class StoreUnavailable(DashboardError):
    """
    Transport or connectivity failure. Retryable: callers back off and
    try again, subscriptions resubscribe on their own.
    """


class ValidationError(DashboardError):
    """Malformed query, path or payload. Never retried automatically."""


class PartialFailure(DashboardError):
    def __init__(self, results: List[Any], message: Optional[str] = None):
        failed = sum(1 for r in results if not r.ok)
        super().__init__(
            message or f"{failed} of {len(results)} batch operations failed"
        )
        self.results = results
