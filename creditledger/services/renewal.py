# =========================================================
# FILE: /creditledger/services/renewal.py
# =========================================================
"""Plan credit top-ups per billing period.

Renewals are additive: the period's included credits are added to whatever is
left in the plan bucket, never replacing it. Each ``period_id`` is applied at
most once per account, so redelivered or out-of-order renewal webhooks are
no-ops.

The monthly rollover of annual plans also settles the overage accrued during
the month before topping up the plan bucket.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select

from creditledger.core.errors import AccountNotFound, DuplicateTransaction, InvalidAdjustment
from creditledger.models.billing_period import BillingPeriod
from creditledger.services.buckets import BucketSource
from creditledger.services.catalog import get_plan
from creditledger.services.credit_store import AccountTransaction, CreditBucketStore
from creditledger.services.overage import OverageBillingCalculator

logger = logging.getLogger("creditledger.renewal")


def monthly_period_id(now: datetime) -> str:
    return f"monthly:{now.year:04d}-{now.month:02d}"


class PeriodRenewalReconciler:
    def __init__(self, store: CreditBucketStore, overage: Optional[OverageBillingCalculator] = None):
        self.store = store
        self.overage = overage

    async def on_period_renewed(
        self,
        account_id: str,
        period_id: str,
        included_credits: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        period_id = (period_id or "").strip()
        if not period_id:
            raise InvalidAdjustment("period_id is required")
        if isinstance(included_credits, bool) or not isinstance(included_credits, int):
            raise InvalidAdjustment(f"included_credits must be an integer, got {included_credits!r}")
        if included_credits < 0:
            raise InvalidAdjustment(f"included_credits cannot be negative ({included_credits})")

        async def _renew(tx: AccountTransaction) -> Dict[str, Any]:
            try:
                await tx.claim("period_renewal", period_id)
            except DuplicateTransaction:
                logger.info("Period %s already applied to %s, ignoring", period_id, tx.account_id)
                return {"applied": False, "period_id": period_id, "balances": tx.balances.as_dict()}

            # Periods recorded before idempotency keys were purged
            seen = (
                await tx.session.execute(
                    select(BillingPeriod.id).where(
                        BillingPeriod.account_id == tx.account_id,
                        BillingPeriod.period_id == period_id,
                    )
                )
            ).scalar_one_or_none()
            if seen is not None:
                logger.info("Period %s already recorded for %s, ignoring", period_id, tx.account_id)
                return {"applied": False, "period_id": period_id, "balances": tx.balances.as_dict()}

            if included_credits > 0:
                tx.adjust(BucketSource.PLAN, included_credits, "period_renewal", ref_id=period_id)

            tx.add(BillingPeriod(
                account_id=tx.account_id,
                period_id=period_id,
                included_credits=included_credits,
                period_start=period_start,
                period_end=period_end,
                applied_at=tx.now,
            ))
            account = tx.account
            account.current_period_id = period_id
            account.current_period_start = period_start or tx.now
            account.current_period_end = period_end

            tx.remember("period_renewal", period_id, {"included_credits": included_credits})
            logger.info(
                "Period %s applied to %s: +%d plan credits (plan balance now %d)",
                period_id, tx.account_id, included_credits, tx.balances.plan,
            )
            return {"applied": True, "period_id": period_id, "balances": tx.balances.as_dict()}

        return await self.store.run(account_id, _renew, create=True)

    async def on_monthly_rollover(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        included_credits: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Monthly top-up for annual subscriptions, keyed by calendar month."""
        now = now or self.store.clock()
        if included_credits is None:
            account = await self.store.get_account(account_id)
            included_credits = get_plan(account.plan_handle).included_credits

        settlement = None
        if self.overage is not None:
            try:
                settlement = await self.overage.settle_accrued(account_id, monthly_period_id(now))
            except AccountNotFound:
                settlement = None

        period_start = datetime(now.year, now.month, 1)
        if now.month == 12:
            period_end = datetime(now.year + 1, 1, 1)
        else:
            period_end = datetime(now.year, now.month + 1, 1)
        result = await self.on_period_renewed(
            account_id,
            monthly_period_id(now),
            included_credits,
            period_start=period_start,
            period_end=period_end,
        )
        return {**result, "overage_settlement": settlement}
