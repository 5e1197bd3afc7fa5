"""Domain errors shared across the engine, store, and query layers."""

from __future__ import annotations


class InsiderFinderError(Exception):
    """Base class for all insider-finder errors."""


class ValidationError(InsiderFinderError):
    """Raised for malformed inbound events or query parameters."""


class NotFoundError(InsiderFinderError):
    """Raised when a requested wallet, market, or observation does not exist."""


class ConsistencyError(InsiderFinderError):
    """Raised when an event conflicts with previously recorded immutable data.

    The conflicting event is rejected; the stored data stays authoritative.
    """


class TransientStorageError(InsiderFinderError):
    """Raised when a storage operation failed in a way that may succeed on retry."""
