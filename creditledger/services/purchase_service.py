# =========================================================
# FILE: /creditledger/services/purchase_service.py
# =========================================================

import logging
from typing import Any, Dict, Optional

from creditledger.core.errors import DuplicateTransaction, InvalidAdjustment
from creditledger.models.payment import Payment
from creditledger.services.buckets import BucketSource
from creditledger.services.catalog import CreditPackage, get_package
from creditledger.services.credit_store import AccountTransaction, CreditBucketStore

logger = logging.getLogger("creditledger.purchases")


class PurchaseCreditService:
    def __init__(self, store: CreditBucketStore):
        self.store = store

    def resolve_package(self, package_id: str, credit_amount: Optional[int] = None) -> CreditPackage:
        package = get_package(package_id)
        if package is None:
            raise InvalidAdjustment(f"Unknown credit package {package_id!r}")
        if credit_amount is not None:
            if isinstance(credit_amount, bool) or not isinstance(credit_amount, int):
                raise InvalidAdjustment(f"credit_amount must be an integer, got {credit_amount!r}")
            if credit_amount != package.credits:
                raise InvalidAdjustment(
                    f"Package {package.id} grants {package.credits} credits, not {credit_amount}"
                )
        return package

    async def confirm(
        self,
        account_id: str,
        package_id: str,
        transaction_id: str,
        credit_amount: Optional[int] = None,
        payment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add a paid package to the purchased bucket, once per transaction id.

        ``payment_id`` links a local ``Payment`` row (Stripe checkout), which is
        marked completed in the same transaction as the credit.
        """
        transaction_id = (transaction_id or "").strip()
        if not transaction_id:
            raise InvalidAdjustment("Purchase confirmation requires a transaction id")
        package = self.resolve_package(package_id, credit_amount)

        async def _confirm(tx: AccountTransaction) -> Dict[str, Any]:
            try:
                await tx.claim("purchase", transaction_id)
            except DuplicateTransaction as dup:
                logger.info("Purchase %s already applied to %s", transaction_id, tx.account_id)
                return {**dup.result, "replayed": True, "balances": tx.balances.as_dict()}

            tx.adjust(BucketSource.PURCHASED, package.credits, "credit_purchase", ref_id=transaction_id)

            if payment_id:
                payment = await tx.session.get(Payment, payment_id)
                if payment is not None:
                    payment.status = "completed"
                    payment.paid_at = tx.now

            result = {
                "package_id": package.id,
                "credits_added": package.credits,
                "transaction_id": transaction_id,
            }
            tx.remember("purchase", transaction_id, result)
            logger.info("Purchase %s for %s: +%d credits (%s)", transaction_id, tx.account_id, package.credits, package.id)
            return {**result, "replayed": False, "balances": tx.balances.as_dict()}

        return await self.store.run(account_id, _confirm, create=True)
