# Overview: Error kinds raised by engine operations.

"""
Every engine error carries a human message plus a `details` dict with enough
context (document id, offending line, quantities) for the caller to correct
input or retry. An error raised inside a unit of work aborts the whole unit.
"""

from __future__ import annotations


class LedgerEngineError(Exception):
    """Base class for all engine errors."""
    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(LedgerEngineError):
    """Raised when operation input is malformed."""
    code = "VALIDATION_ERROR"


class NotFound(LedgerEngineError):
    """Raised when a referenced document, product or party does not exist."""
    code = "NOT_FOUND"


class InvalidState(LedgerEngineError):
    """Raised when an operation is illegal for the document's current status."""
    code = "INVALID_STATE"


class InsufficientStock(LedgerEngineError):
    """Raised when a validated decrement would exceed available quantity."""
    code = "INSUFFICIENT_STOCK"


class UnbalancedPosting(LedgerEngineError):
    """Raised when ledger rows do not net to zero. Indicates a programming error."""
    code = "UNBALANCED_POSTING"


class MissingParty(LedgerEngineError):
    """Raised when a vendor or customer reference is required but absent."""
    code = "MISSING_PARTY"


class SplitMismatch(LedgerEngineError):
    """Raised when split tenders do not sum to the sale total."""
    code = "SPLIT_MISMATCH"
