# Overview: Typed failures raised by ledger operations.

"""
Ledger error taxonomy.

Every public ledger operation either returns the mutated entity or raises one
of these. The enclosing transaction is rolled back before the error leaves
the service layer, so callers never observe a partial write.

    LedgerError
    +-- ValidationError        bad input (zero quantity, unknown type, ...)
    +-- NotFound               entity absent or owned by another tenant
    +-- InvalidState           double-open session, closed session, depleted batch
    +-- InsufficientResource   requested quantity exceeds available stock
    +-- PolicyViolation        credit overpayment and similar business caps
    +-- ConcurrencyConflict    lock/sequence collision; caller may retry
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures. Carries a machine-readable code."""
    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(LedgerError):
    code = "VALIDATION_ERROR"


class NotFound(LedgerError):
    code = "NOT_FOUND"


class InvalidState(LedgerError):
    code = "INVALID_STATE"


class InsufficientResource(LedgerError):
    code = "INSUFFICIENT_RESOURCE"


class PolicyViolation(LedgerError):
    code = "POLICY_VIOLATION"


class ConcurrencyConflict(LedgerError):
    code = "CONCURRENCY_CONFLICT"
