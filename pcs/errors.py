"""Error taxonomy for progression operations."""
from __future__ import annotations


class ProgressionError(Exception):
    """Base class for errors surfaced by the progression core."""

    retryable = False

    def __init__(self, message: str, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class NotFound(ProgressionError):
    """Unknown school, evidence, requirement, or certificate id."""


class InvalidState(ProgressionError):
    """The operation is not allowed in the record's current state."""


class ConstraintViolation(ProgressionError):
    """A uniqueness constraint rejected a write that raced another writer."""


class TransientStoreError(ProgressionError):
    """The record store was unavailable; the whole operation may be retried."""

    retryable = True
