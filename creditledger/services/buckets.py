# =========================================================
# FILE: /creditledger/services/buckets.py
# =========================================================
"""Pure ledger arithmetic: no I/O, no clock.

Four credit sources share one bucket type. They are always walked in
``CONSUMPTION_ORDER``: trial and promotional credit first (time/goodwill
limited), plan credit next (replenished each period), purchased credit last
(paid for explicitly).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Tuple, Union

from creditledger.core.errors import InsufficientBalance, InvalidAdjustment


class BucketSource(str, Enum):
    TRIAL = "trial"
    COUPON = "coupon"
    PLAN = "plan"
    PURCHASED = "purchased"


CONSUMPTION_ORDER: Tuple[BucketSource, ...] = (
    BucketSource.TRIAL,
    BucketSource.COUPON,
    BucketSource.PLAN,
    BucketSource.PURCHASED,
)


def parse_bucket(value: Union[str, BucketSource]) -> BucketSource:
    if isinstance(value, BucketSource):
        return value
    try:
        return BucketSource(str(value or "").strip().lower())
    except ValueError:
        raise InvalidAdjustment(f"Unknown credit bucket: {value!r}") from None


@dataclass(frozen=True)
class Balances:
    trial: int = 0
    coupon: int = 0
    plan: int = 0
    purchased: int = 0

    @property
    def total(self) -> int:
        return self.trial + self.coupon + self.plan + self.purchased

    def get(self, bucket: BucketSource) -> int:
        return getattr(self, bucket.value)

    def with_balance(self, bucket: BucketSource, balance: int) -> "Balances":
        return replace(self, **{bucket.value: balance})

    def as_dict(self) -> Dict[str, int]:
        data = {source.value: self.get(source) for source in CONSUMPTION_ORDER}
        data["total"] = self.total
        return data


@dataclass(frozen=True)
class AuditEntry:
    bucket: BucketSource
    delta: int
    balance_after: int
    reason: str
    ref_id: str | None = None


def apply_adjustment(
    balances: Balances,
    bucket: Union[str, BucketSource],
    delta: int,
    reason: str,
    ref_id: str | None = None,
) -> Tuple[Balances, AuditEntry]:
    """Return the balances after ``delta`` plus the audit entry describing it."""
    source = parse_bucket(bucket)
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidAdjustment(f"Adjustment delta must be an integer, got {delta!r}")
    if delta == 0:
        raise InvalidAdjustment("Adjustment delta must be non-zero")
    if not reason or not str(reason).strip():
        raise InvalidAdjustment("Adjustment reason is required")

    current = balances.get(source)
    new_balance = current + delta
    if new_balance < 0:
        raise InsufficientBalance(source.value, current, delta)

    entry = AuditEntry(
        bucket=source,
        delta=delta,
        balance_after=new_balance,
        reason=str(reason).strip(),
        ref_id=ref_id,
    )
    return balances.with_balance(source, new_balance), entry


def split_consumption(balances: Balances, quantity: int) -> Tuple[Dict[BucketSource, int], int]:
    """Drain buckets left to right; returns per-bucket draws and the shortfall."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidAdjustment(f"Quantity must be a positive integer, got {quantity!r}")

    remaining = quantity
    draws: Dict[BucketSource, int] = {}
    for source in CONSUMPTION_ORDER:
        take = min(balances.get(source), remaining)
        draws[source] = take
        remaining -= take
    return draws, remaining
