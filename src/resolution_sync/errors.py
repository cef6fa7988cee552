#!/usr/bin/env python3
"""Error taxonomy for the resolution sync service.

Source errors come from the chain adapters, decode errors from the event
decoders and store errors from the projection store. Every error other than
UnknownEventType aborts the current cycle without moving its checkpoint.
"""

from .models import Checkpoint


class SyncError(Exception):
    """Base class for errors raised while synchronizing a chain."""


class SourceError(SyncError):
    """A chain endpoint could not deliver the requested records."""


class TransientNetworkError(SourceError):
    """Connection reset, timeout or similar short-lived network failure."""


class RateLimited(SourceError):
    """The endpoint refused the request because of its rate limit."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ChainUnavailable(SourceError):
    """The endpoint answered with an error or an unusable response."""


class DecodeError(SyncError):
    """A raw chain record could not be turned into chain events."""

    def __init__(
        self,
        message: str,
        block_number: int | None = None,
        sequence: int | None = None,
    ) -> None:
        super().__init__(message)
        self.block_number = block_number
        self.sequence = sequence

    @property
    def position(self) -> Checkpoint | None:
        if self.block_number is None or self.sequence is None:
            return None
        return Checkpoint(self.block_number, self.sequence)


class MalformedPayload(DecodeError):
    """A recognized event whose payload does not decode or validate."""


class UnknownEventType(DecodeError):
    """An event this version does not recognize; skipped, never fatal."""

    def __init__(self, event_type: str, block_number: int, sequence: int) -> None:
        super().__init__(
            f"Unknown event type {event_type} at {block_number}/{sequence}",
            block_number=block_number,
            sequence=sequence,
        )
        self.event_type = event_type


class StoreError(SyncError):
    """The projection store rejected or could not perform an operation."""


class ConstraintViolation(StoreError):
    """A write would break a uniqueness or consistency constraint."""


class StoreUnavailable(StoreError):
    """The database could not be reached or the transaction failed."""


class CycleDeadlineExceeded(SyncError):
    """A cycle did not finish fetching and reducing before its deadline."""
