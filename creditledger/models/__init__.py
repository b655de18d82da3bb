from creditledger.models.account import Account
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_ledger import CreditLedger
from creditledger.models.applied_operation import AppliedOperation
from creditledger.models.overage_charge import OverageCharge
from creditledger.models.usage_event import UsageEvent
from creditledger.models.billing_period import BillingPeriod
from creditledger.models.coupon_redemption import CouponRedemption
from creditledger.models.payment import Payment

__all__ = [
    "Account", "CreditBucket", "CreditLedger",
    "AppliedOperation", "OverageCharge", "UsageEvent",
    "BillingPeriod", "CouponRedemption", "Payment"
]
