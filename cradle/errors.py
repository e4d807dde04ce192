"""Error taxonomy shared by the ledger, the prediction engine and the sync bridge."""
from typing import Any


class CradleError(Exception):
    """Base exception for cradle errors"""
    pass


class ValidationError(CradleError):
    """
    Raised when a care event or its metadata is malformed.

    Never sent to the remote store and never mutates a snapshot.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class WriteFailedError(CradleError):
    """Raised when the remote event store rejects or fails a write; the snapshot has been rolled back."""

    def __init__(self, message: str, correlation_id: str, owner_id: str):
        super().__init__(message)
        self.correlation_id = correlation_id
        self.owner_id = owner_id


class InvalidInputError(CradleError):
    """Raised when the prediction engine is given impossible dates or timestamps."""
    pass


class SyncChannelError(CradleError):
    """Raised (and logged) when the realtime change feed transport fails."""
    pass
