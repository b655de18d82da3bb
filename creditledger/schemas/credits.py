from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """JSON bodies are camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ─────────────────────────────────────────────
# BALANCES
# ─────────────────────────────────────────────

class BalancesResponse(CamelModel):
    trial: int = 0
    coupon: int = 0
    plan: int = 0
    purchased: int = 0
    total: int = 0


class CreditTransaction(CamelModel):
    id: int
    bucket: str
    delta: int
    balance_after: int
    reason: str
    ref_id: Optional[str] = None
    created_at: datetime


# ─────────────────────────────────────────────
# USAGE
# ─────────────────────────────────────────────

class ConsumeRequest(CamelModel):
    account_id: str
    quantity: int = Field(default=1, gt=0)
    idempotency_key: Optional[str] = None


class ConsumeResponse(CamelModel):
    trial_used: int
    coupon_used: int
    plan_used: int
    purchased_used: int
    overage_billed: int
    overage_amount_cents: int = 0
    balances: BalancesResponse
    replayed: bool = False


class RefundRequest(CamelModel):
    account_id: str
    idempotency_key: str
    reason: str = "generation_failed"

    @field_validator("idempotency_key")
    @classmethod
    def key_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("idempotencyKey must not be empty")
        return value


class RefundResponse(CamelModel):
    restored: Dict[str, int] = Field(default_factory=dict)
    overage_not_refunded: int = 0
    balances: BalancesResponse
    replayed: bool = False


# ─────────────────────────────────────────────
# BILLING WEBHOOKS
# ─────────────────────────────────────────────

class PeriodRenewedRequest(CamelModel):
    account_id: str
    period_id: str
    included_credits: int
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @field_validator("period_id")
    @classmethod
    def period_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("periodId must not be empty")
        return value

    @field_validator("period_start", "period_end")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class PeriodRenewedResponse(CamelModel):
    received: bool = True
    applied: bool
    balances: Optional[BalancesResponse] = None


class PurchaseConfirmedRequest(CamelModel):
    account_id: str
    package_id: str
    credit_amount: Optional[int] = None
    transaction_id: str

    @field_validator("transaction_id")
    @classmethod
    def transaction_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("transactionId must not be empty")
        return value


class TrialEndedRequest(CamelModel):
    account_id: str
    reason: str = "admin"


class CreditGrantResponse(CamelModel):
    credits_added: int = 0
    replayed: bool = False
    balances: BalancesResponse


# ─────────────────────────────────────────────
# MERCHANT
# ─────────────────────────────────────────────

class CouponRedeemRequest(CamelModel):
    coupon_code: str
    credit_amount: Optional[int] = None
    transaction_id: Optional[str] = None


class PackageResponse(CamelModel):
    id: str
    name: str
    credits: int
    price_cents: int
    price_display: str
    currency: str = "USD"
    recommended: bool = False
    description: str = ""


class PlanResponse(CamelModel):
    handle: str
    name: str
    price_cents: int
    price_display: str
    interval: str
    trial_days: int
    included_credits: int
    overage_unit_cents: int
    capped_amount_cents: int
    description: str = ""


class PurchaseRequest(CamelModel):
    package_id: str


class PurchaseResponse(CamelModel):
    payment_id: str
    checkout_url: Optional[str] = None
    status: str


class OverageSummaryResponse(CamelModel):
    period_id: Optional[str] = None
    period_start: Optional[datetime] = None
    billing_mode: str = "immediate"
    overage_units: int = 0
    overage_amount_cents: int = 0
    accrued_amount_cents: int = 0
    pending_amount_cents: int = 0
    unit_rate_cents: int
    capped_amount_cents: int
    cap_used_percent: float = 0.0
    approaching_cap: bool = False


class TrialStatusResponse(CamelModel):
    phase: str
    is_active: bool
    trial_balance: int
    trial_credits_total: int
    days_remaining: int
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    credits_used: int = 0
    notification_threshold: Optional[int] = None
    notifications_sent: List[int] = Field(default_factory=list)


# ─────────────────────────────────────────────
# ACCOUNTS
# ─────────────────────────────────────────────

class ActivateRequest(CamelModel):
    account_id: str
    plan_handle: Optional[str] = None
    billing_customer_id: Optional[str] = None


class ActivateResponse(TrialStatusResponse):
    started: bool = False
    balances: Optional[BalancesResponse] = None


class TrialEndResponse(TrialStatusResponse):
    ended: bool = False



class TrialNotificationResponse(TrialStatusResponse):
    marked: bool = False


class OverageSettlementResponse(CamelModel):
    period_id: str
    billed: bool
    reason: Optional[str] = None
    overage_units: int = 0
    amount_cents: int = 0
    billing_key: Optional[str] = None
    status: Optional[str] = None
    provider_ref: Optional[str] = None
    replayed: bool = False


class OverageReconcileResponse(CamelModel):
    submitted: int = 0
    billed: int = 0
    pending: int = 0


class RolloverResponse(CamelModel):
    applied: bool
    period_id: str
    balances: Optional[BalancesResponse] = None
    overage_settlement: Optional[OverageSettlementResponse] = None
