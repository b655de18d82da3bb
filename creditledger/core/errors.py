"""Ledger error taxonomy.

Only ``OverageUnavailable`` and ``InvalidAdjustment`` (plus the lookup and
contention errors) ever leave the services. ``InsufficientBalance`` is routed
around by the priority fallthrough and ``DuplicateTransaction`` is turned into
a success no-op by whoever claimed the idempotency key.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for every error raised by the credit ledger."""


class InsufficientBalance(LedgerError):
    def __init__(self, bucket: str, balance: int, delta: int):
        self.bucket = bucket
        self.balance = balance
        self.delta = delta
        super().__init__(
            f"Adjustment of {delta} would drive {bucket} balance {balance} below zero"
        )


class OverageUnavailable(LedgerError):
    """Overage billing is required but cannot be charged."""

    def __init__(self, account_id: str, reason: str, message: Optional[str] = None):
        self.account_id = account_id
        self.reason = reason
        super().__init__(message or f"Overage billing unavailable for {account_id}: {reason}")


class DuplicateTransaction(LedgerError):
    """An idempotency key that was already applied to this account."""

    def __init__(self, kind: str, key: str, result: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.key = key
        self.result = result or {}
        super().__init__(f"{kind} {key} already applied")


class InvalidAdjustment(LedgerError):
    """Malformed request, rejected before stored state is touched."""


class InvalidCoupon(InvalidAdjustment):
    def __init__(self, code: str, error: str, message: str):
        self.code = code
        self.error = error
        super().__init__(message)


class AccountNotFound(LedgerError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Unknown account {account_id}")


class ConcurrentModification(LedgerError):
    """The per-account transaction kept losing optimistic version checks."""

    def __init__(self, account_id: str, attempts: int):
        self.account_id = account_id
        self.attempts = attempts
        super().__init__(f"Gave up on {account_id} after {attempts} conflicting attempts")
