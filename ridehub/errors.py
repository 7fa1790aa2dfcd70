"""
Failure taxonomy shared by every ledger.

Each error carries a machine-readable ``kind`` and the HTTP status the API
renders it with. Raising one inside a transaction aborts the whole unit.
"""
from __future__ import annotations


class LedgerError(Exception):
    kind = "LedgerError"
    status_code = 400

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class CapacityExceeded(LedgerError):
    kind = "CapacityExceeded"
    status_code = 409


class OrderUnavailable(LedgerError):
    kind = "OrderUnavailable"
    status_code = 409


class InsufficientBalance(LedgerError):
    kind = "InsufficientBalance"
    status_code = 402


class NotFound(LedgerError):
    kind = "NotFound"
    status_code = 404


class UserNotFound(NotFound):
    kind = "UserNotFound"


class InvalidState(LedgerError):
    kind = "InvalidState"
    status_code = 409


class AlreadyAssigned(LedgerError):
    kind = "AlreadyAssigned"
    status_code = 409


class Unauthorized(LedgerError):
    kind = "Unauthorized"
    status_code = 403


class Unauthenticated(LedgerError):
    kind = "Unauthenticated"
    status_code = 401


class InvalidAmount(LedgerError):
    kind = "InvalidAmount"
    status_code = 422


class InvalidLocation(LedgerError):
    kind = "InvalidLocation"
    status_code = 422


class InvalidAttachment(LedgerError):
    kind = "InvalidAttachment"
    status_code = 422


class TransactionConflict(LedgerError):
    """The unit kept losing optimistic races and ran out of attempts."""

    kind = "TransactionConflict"
    status_code = 503


class StaleWrite(Exception):
    """A compare-and-set update matched no row; the unit must be re-run."""


class BlobUploadError(Exception):
    """Raised by blob stores. Never reaches the caller of a send/submit."""
