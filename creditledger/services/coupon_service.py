# =========================================================
# FILE: /creditledger/services/coupon_service.py
# =========================================================

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, select

from creditledger.core.errors import DuplicateTransaction, InvalidAdjustment, InvalidCoupon
from creditledger.models.coupon_redemption import CouponRedemption
from creditledger.services.buckets import BucketSource
from creditledger.services.catalog import Coupon, get_coupon, normalize_coupon_code
from creditledger.services.credit_store import AccountTransaction, CreditBucketStore

logger = logging.getLogger("creditledger.coupons")


class CouponRedemptionService:
    def __init__(self, store: CreditBucketStore):
        self.store = store

    def validate(self, code: str, now, credit_amount: Optional[int] = None) -> Coupon:
        """Catalog checks that don't need the account's redemption history."""
        if not code:
            raise InvalidCoupon(code, "INVALID_CODE", "Coupon code is required")
        coupon = get_coupon(code)
        if coupon is None:
            raise InvalidCoupon(code, "INVALID_CODE", f"Coupon code {code} is not valid")
        if not coupon.active:
            raise InvalidCoupon(code, "INACTIVE_CODE", f"Coupon code {code} is no longer active")
        if coupon.expires_at is not None and now > coupon.expires_at:
            raise InvalidCoupon(code, "EXPIRED_CODE", f"Coupon code {code} has expired")
        if credit_amount is not None and credit_amount != coupon.credits:
            raise InvalidCoupon(
                code,
                "CREDIT_MISMATCH",
                f"Coupon {code} grants {coupon.credits} credits, not {credit_amount}",
            )
        return coupon

    async def redeem(
        self,
        account_id: str,
        coupon_code: str,
        transaction_id: str,
        credit_amount: Optional[int] = None,
    ) -> Dict[str, Any]:
        code = normalize_coupon_code(coupon_code)
        transaction_id = (transaction_id or "").strip()
        if not transaction_id:
            raise InvalidAdjustment("Coupon redemption requires a transaction id")
        if credit_amount is not None and (isinstance(credit_amount, bool) or not isinstance(credit_amount, int)):
            raise InvalidAdjustment(f"credit_amount must be an integer, got {credit_amount!r}")

        # Fail fast on catalog errors so no account is created for a bad code
        self.validate(code, self.store.clock(), credit_amount)

        async def _redeem(tx: AccountTransaction) -> Dict[str, Any]:
            try:
                await tx.claim("coupon", transaction_id)
            except DuplicateTransaction as dup:
                logger.info("Coupon transaction %s already applied to %s", transaction_id, tx.account_id)
                return {**dup.result, "replayed": True, "balances": tx.balances.as_dict()}

            coupon = self.validate(code, tx.now, credit_amount)
            if coupon.per_shop_limit is not None:
                used = (
                    await tx.session.execute(
                        select(func.count(CouponRedemption.id)).where(
                            CouponRedemption.account_id == tx.account_id,
                            CouponRedemption.code == coupon.code,
                        )
                    )
                ).scalar() or 0
                if used >= coupon.per_shop_limit:
                    raise InvalidCoupon(
                        code,
                        "USAGE_LIMIT_EXCEEDED",
                        f"Coupon {code} has already been used the maximum number of times ({coupon.per_shop_limit})",
                    )

            tx.adjust(BucketSource.COUPON, coupon.credits, "coupon_redemption", ref_id=transaction_id)
            tx.add(CouponRedemption(
                account_id=tx.account_id,
                code=coupon.code,
                credits=coupon.credits,
                transaction_id=transaction_id,
                created_at=tx.now,
            ))
            result = {"code": coupon.code, "credits_added": coupon.credits}
            tx.remember("coupon", transaction_id, result)
            logger.info("Coupon %s redeemed by %s: +%d credits", coupon.code, tx.account_id, coupon.credits)
            return {**result, "replayed": False, "balances": tx.balances.as_dict()}

        return await self.store.run(account_id, _redeem, create=True)
