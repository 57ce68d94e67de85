"""
Sync-run errors raised above the provider boundary.

Provider failures use the taxonomy in ``mailsync.services.providers.base``;
these describe what happened to a run as a whole.
"""

from typing import Optional


class SyncRunError(Exception):
    """Base class. ``retryable`` decides whether the scheduler tries again."""

    retryable = False


class AlreadySyncing(SyncRunError):
    """Another worker holds the account lease. Callers treat this as a no-op."""


class AccountNotFound(SyncRunError):
    pass


class NeedsReauth(SyncRunError):
    """Credential cannot be refreshed; the user must reconnect the mailbox."""


class LeaseLost(SyncRunError):
    """Our lease expired and was taken over; the run must stop writing."""

    retryable = True


class RetryBudgetExhausted(SyncRunError):
    """A provider call kept failing with retryable errors."""

    retryable = True

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_error = last_error
