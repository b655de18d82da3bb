# =========================================================
# FILE: /creditledger/services/ledger.py
# =========================================================
"""One object holding every ledger component, shared by the HTTP layer."""

from typing import Optional

from creditledger.services.consumption_engine import PriorityConsumptionEngine
from creditledger.services.coupon_service import CouponRedemptionService
from creditledger.services.credit_store import CreditBucketStore
from creditledger.services.overage import OverageBillingCalculator, PaymentGateway
from creditledger.services.purchase_service import PurchaseCreditService
from creditledger.services.renewal import PeriodRenewalReconciler
from creditledger.services.trial_manager import TrialLifecycleManager


class CreditLedgerService:
    def __init__(
        self,
        store: Optional[CreditBucketStore] = None,
        gateway: Optional[PaymentGateway] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store or CreditBucketStore()
        if timeout_seconds is None:
            self.overage = OverageBillingCalculator(self.store, gateway)
        else:
            self.overage = OverageBillingCalculator(self.store, gateway, timeout_seconds=timeout_seconds)
        self.trial = TrialLifecycleManager(self.store)
        self.engine = PriorityConsumptionEngine(self.store, overage=self.overage, trial=self.trial)
        self.renewals = PeriodRenewalReconciler(self.store, overage=self.overage)
        self.coupons = CouponRedemptionService(self.store)
        self.purchases = PurchaseCreditService(self.store)


_ledger: Optional[CreditLedgerService] = None


def get_ledger() -> CreditLedgerService:
    global _ledger
    if _ledger is None:
        _ledger = CreditLedgerService()
    return _ledger


def set_ledger(ledger: Optional[CreditLedgerService]) -> None:
    """Swap the process-wide ledger (tests inject one with a mock gateway)."""
    global _ledger
    _ledger = ledger
