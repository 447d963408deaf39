from __future__ import annotations


class CustodyError(RuntimeError):
    kind = "CustodyError"

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id


class NotFound(CustodyError):
    kind = "NotFound"


class NotAvailable(CustodyError):
    kind = "NotAvailable"


class Blocked(CustodyError):
    kind = "Blocked"


class StillActive(CustodyError):
    kind = "StillActive"


class AlreadyClosed(CustodyError):
    kind = "AlreadyClosed"


class InvalidAmount(CustodyError):
    kind = "InvalidAmount"


class InvalidRequest(CustodyError):
    kind = "InvalidRequest"


class InvariantViolation(CustodyError):
    """Two collections disagree on whether an item is free.

    Never raised for a valid sequence of transitions; it means the data was
    edited behind the engine's back and must be surfaced, not repaired.
    """

    kind = "InvariantViolation"
