# =========================================================
# FILE: /creditledger/services/catalog.py
# =========================================================

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from creditledger.core.config import OVERAGE_UNIT_CENTS, OVERAGE_CAPPED_AMOUNT_CENTS


class Plan(BaseModel):
    handle: str
    name: str
    price_cents: int
    currency: str = "USD"
    interval: str  # EVERY_30_DAYS | ANNUAL
    trial_days: int = 30
    included_credits: int
    overage_unit_cents: int = OVERAGE_UNIT_CENTS
    capped_amount_cents: int = OVERAGE_CAPPED_AMOUNT_CENTS
    description: str = ""


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int
    price_cents: int
    currency: str = "USD"
    recommended: bool = False
    description: str = ""


class Coupon(BaseModel):
    code: str
    credits: int
    per_shop_limit: Optional[int] = 1
    expires_at: Optional[datetime] = None
    active: bool = True
    description: str = ""


# ─────────────────────────────────────────────
# PLANS
# ─────────────────────────────────────────────

PLANS: Dict[str, Plan] = {
    "pro-monthly": Plan(
        handle="pro-monthly",
        name="Plan Standard",
        price_cents=2300,
        interval="EVERY_30_DAYS",
        included_credits=100,
        description="100 credits included, overage billed per try-on.",
    ),
    "pro-annual": Plan(
        handle="pro-annual",
        name="Plan Standard (annual)",
        price_cents=18000,
        interval="ANNUAL",
        included_credits=100,
        description="100 credits included every month, overage billed per try-on.",
    ),
}

DEFAULT_PLAN = PLANS["pro-monthly"]


# ─────────────────────────────────────────────
# CREDIT PACKAGES
# ─────────────────────────────────────────────

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "small": CreditPackage(
        id="small",
        name="50 Credits",
        credits=50,
        price_cents=1000,
        description="Perfect for testing",
    ),
    "medium": CreditPackage(
        id="medium",
        name="100 Credits",
        credits=100,
        price_cents=1800,
        recommended=True,
        description="Best value",
    ),
    "large": CreditPackage(
        id="large",
        name="200 Credits",
        credits=200,
        price_cents=3200,
        description="For high-volume shops",
    ),
}


# ─────────────────────────────────────────────
# COUPONS (credit-granting, not price discounts)
# ─────────────────────────────────────────────

COUPON_CODES: Dict[str, Coupon] = {
    "WELCOME50": Coupon(
        code="WELCOME50",
        credits=50,
        per_shop_limit=1,
        description="Welcome bonus - 50 free credits",
    ),
    "REFERRAL100": Coupon(
        code="REFERRAL100",
        credits=100,
        per_shop_limit=1,
        description="Referral bonus - 100 free credits",
    ),
    "HOLIDAY25": Coupon(
        code="HOLIDAY25",
        credits=25,
        per_shop_limit=3,
        expires_at=datetime(2024, 12, 25, 23, 59, 59),
        description="Holiday special - 25 credits (3 uses per shop)",
    ),
}


def get_plan(handle: Optional[str]) -> Plan:
    """Unknown or missing handles bill at the default plan's rates."""
    if not handle:
        return DEFAULT_PLAN
    return PLANS.get(handle.strip().lower(), DEFAULT_PLAN)


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def get_package(package_id: Optional[str]) -> Optional[CreditPackage]:
    if not package_id:
        return None
    return CREDIT_PACKAGES.get(str(package_id).strip().lower())


def list_packages() -> List[CreditPackage]:
    return list(CREDIT_PACKAGES.values())


def normalize_coupon_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def get_coupon(code: Optional[str]) -> Optional[Coupon]:
    return COUPON_CODES.get(normalize_coupon_code(code))
