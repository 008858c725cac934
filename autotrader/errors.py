"""Exception types raised by the execution core.

Broker outcomes are never raised; they come back as typed result objects
from the gateway. Exceptions are reserved for rejected input and for
violations of the position and ledger contracts.
"""

from __future__ import annotations


class AutotraderError(Exception):
    """Base class for all autotrader errors."""


class SignalValidationError(AutotraderError):
    """Inbound signal is malformed or targets an unknown bot."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


class PositionStateError(AutotraderError):
    """A mutation would break the position state machine or its invariants."""


class ConcurrentModificationError(AutotraderError):
    """The stored record changed between read and write."""


class InvalidTransitionError(AutotraderError):
    """An execution status change that is not allowed by the ledger."""
