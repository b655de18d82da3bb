# =========================================================
# FILE: /creditledger/services/consumption_engine.py
# =========================================================
"""Priority consumption: trial -> coupon -> plan -> purchased -> overage.

The split is computed from the balances read inside the account transaction,
so a debit can never exceed a bucket and ``InsufficientBalance`` never reaches
the caller. Whatever the buckets cannot cover goes to overage billing; if that
is refused the whole transaction rolls back and no bucket is debited. The
provider charge for the overage is only requested once the ledger committed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import select

from creditledger.core.errors import DuplicateTransaction, InvalidAdjustment
from creditledger.models.usage_event import UsageEvent
from creditledger.services.buckets import CONSUMPTION_ORDER, Balances, BucketSource, split_consumption
from creditledger.services.credit_store import AccountTransaction, CreditBucketStore
from creditledger.services.overage import ChargeStatus, OverageBillingCalculator
from creditledger.services.trial_manager import TrialEndReason, TrialLifecycleManager, TrialPhase

logger = logging.getLogger("creditledger.consumption")


@dataclass
class ConsumptionResult:
    account_id: str
    idempotency_key: str
    quantity: int
    trial_used: int = 0
    coupon_used: int = 0
    plan_used: int = 0
    purchased_used: int = 0
    overage_billed: int = 0
    overage_amount_cents: int = 0
    overage_charge: Optional[Dict[str, Any]] = None
    balances: Balances = field(default_factory=Balances)
    replayed: bool = False

    def used(self, bucket: BucketSource) -> int:
        return getattr(self, f"{bucket.value}_used")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "idempotency_key": self.idempotency_key,
            "quantity": self.quantity,
            "trial_used": self.trial_used,
            "coupon_used": self.coupon_used,
            "plan_used": self.plan_used,
            "purchased_used": self.purchased_used,
            "overage_billed": self.overage_billed,
            "overage_amount_cents": self.overage_amount_cents,
            "overage_charge": self.overage_charge,
            "balances": self.balances.as_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> "ConsumptionResult":
        balances = {k: int(v) for k, v in (data.get("balances") or {}).items() if k != "total"}
        return cls(
            account_id=data["account_id"],
            idempotency_key=data["idempotency_key"],
            quantity=int(data["quantity"]),
            trial_used=int(data.get("trial_used") or 0),
            coupon_used=int(data.get("coupon_used") or 0),
            plan_used=int(data.get("plan_used") or 0),
            purchased_used=int(data.get("purchased_used") or 0),
            overage_billed=int(data.get("overage_billed") or 0),
            overage_amount_cents=int(data.get("overage_amount_cents") or 0),
            overage_charge=data.get("overage_charge"),
            balances=Balances(**balances),
            replayed=replayed,
        )


class PriorityConsumptionEngine:
    def __init__(
        self,
        store: CreditBucketStore,
        overage: OverageBillingCalculator,
        trial: TrialLifecycleManager,
    ):
        self.store = store
        self.overage = overage
        self.trial = trial

    async def consume(
        self,
        account_id: str,
        quantity: int = 1,
        idempotency_key: Optional[str] = None,
    ) -> ConsumptionResult:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidAdjustment(f"Quantity must be a positive integer, got {quantity!r}")
        key = (idempotency_key or "").strip() or f"usage-{uuid.uuid4()}"

        async def _consume(tx: AccountTransaction) -> ConsumptionResult:
            try:
                await tx.claim("consume", key)
            except DuplicateTransaction as dup:
                logger.info("Replayed usage %s for %s, returning original result", key, tx.account_id)
                return ConsumptionResult.from_dict(dup.result, replayed=True)

            phase = self.trial.refresh(tx)
            draws, shortfall = split_consumption(tx.balances, quantity)

            charge = None
            if shortfall:
                # Raises OverageUnavailable before any bucket is touched
                charge = await self.overage.bill_overage(tx, shortfall, key)

            for source in CONSUMPTION_ORDER:
                if draws[source]:
                    tx.adjust(source, -draws[source], "consumption", ref_id=key)

            if phase is TrialPhase.ACTIVE and draws[BucketSource.TRIAL] and tx.balances.trial == 0:
                self.trial.end_in(tx, TrialEndReason.CREDITS_EXHAUSTED)

            tx.add(UsageEvent(
                account_id=tx.account_id,
                idempotency_key=key,
                quantity=quantity,
                trial_used=draws[BucketSource.TRIAL],
                coupon_used=draws[BucketSource.COUPON],
                plan_used=draws[BucketSource.PLAN],
                purchased_used=draws[BucketSource.PURCHASED],
                overage_units=shortfall,
                overage_charge_id=charge.charge_id if charge else None,
                created_at=tx.now,
            ))

            result = ConsumptionResult(
                account_id=tx.account_id,
                idempotency_key=key,
                quantity=quantity,
                trial_used=draws[BucketSource.TRIAL],
                coupon_used=draws[BucketSource.COUPON],
                plan_used=draws[BucketSource.PLAN],
                purchased_used=draws[BucketSource.PURCHASED],
                overage_billed=shortfall,
                overage_amount_cents=charge.amount_cents if charge else 0,
                overage_charge=charge.as_dict() if charge else None,
                balances=tx.balances,
            )
            tx.remember("consume", key, result.as_dict())

            logger.info(
                "Consumed %d for %s: trial=%d coupon=%d plan=%d purchased=%d overage=%d",
                quantity, tx.account_id, result.trial_used, result.coupon_used,
                result.plan_used, result.purchased_used, result.overage_billed,
            )
            return result

        result = await self.store.run(account_id, _consume)
        charge = result.overage_charge
        if charge and charge.get("status") == ChargeStatus.PENDING.value and charge.get("billing_key"):
            # Ledger row is committed; now the provider may be asked for money
            submitted = await self.overage.submit_pending(result.account_id, billing_key=charge["billing_key"])
            if submitted:
                result.overage_charge = submitted[0].as_dict()
        return result

    async def refund(self, account_id: str, idempotency_key: str, reason: str = "generation_failed") -> Dict[str, Any]:
        """Give a failed generation's bucket debits back to the buckets they came from."""
        key = (idempotency_key or "").strip()
        if not key:
            raise InvalidAdjustment("Refund requires the usage idempotency key")

        async def _refund(tx: AccountTransaction) -> Dict[str, Any]:
            try:
                await tx.claim("refund", key)
            except DuplicateTransaction as dup:
                return {**dup.result, "replayed": True}

            event = (
                await tx.session.execute(
                    select(UsageEvent).where(
                        UsageEvent.account_id == tx.account_id,
                        UsageEvent.idempotency_key == key,
                    )
                )
            ).scalar_one_or_none()
            if event is None:
                raise InvalidAdjustment(f"No usage event {key} to refund")

            restored: Dict[str, int] = {}
            if event.refunded_at is None:
                for source in CONSUMPTION_ORDER:
                    amount = int(getattr(event, f"{source.value}_used") or 0)
                    if amount:
                        tx.adjust(source, amount, "refund", ref_id=key)
                        restored[source.value] = amount
                event.refunded_at = tx.now

            if event.overage_units:
                logger.warning(
                    "Usage %s for %s included %d overage unit(s); billed overage is not refunded automatically (%s)",
                    key, tx.account_id, event.overage_units, reason,
                )

            result = {
                "account_id": tx.account_id,
                "idempotency_key": key,
                "reason": reason,
                "restored": restored,
                "overage_not_refunded": int(event.overage_units or 0),
                "balances": tx.balances.as_dict(),
            }
            tx.remember("refund", key, result)
            logger.info("Refunded usage %s for %s: %s", key, tx.account_id, restored)
            return {**result, "replayed": False}

        return await self.store.run(account_id, _refund)
