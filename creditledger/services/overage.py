# =========================================================
# FILE: /creditledger/services/overage.py
# =========================================================
"""Metered overage billing once every credit bucket is empty.

amount_cents = quantity * unit_rate_cents, unit rate taken from the account's
plan. Billing happens in two steps:

1. ``bill_overage`` runs inside the consumer's account transaction. It checks
   the payment method (bounded by ``PAYMENT_CHECK_TIMEOUT_SECONDS``) and the
   period cap, then records the charge row. Nothing is sent to the provider
   yet, so a rollback leaves no money moved.
2. ``submit_pending`` runs after the ledger committed and sends pending rows
   to the provider under their stored idempotency key. A row whose provider
   call fails or times out stays ``pending`` and is picked up by the next
   submit; the provider key makes the retry land on the same charge.

Annual plans cannot carry usage charges, so their overage is recorded as
``accrued`` and settled once a month by ``settle_accrued``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy import func, select, update

from creditledger.core.config import (
    LOG_DIR,
    OVERAGE_CAP_WARNING_PERCENT,
    OVERAGE_MIN_SETTLEMENT_CENTS,
    PAYMENT_CHECK_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
    TEST_MODE,
)
from creditledger.core.errors import DuplicateTransaction, InvalidAdjustment, OverageUnavailable
from creditledger.models.account import Account
from creditledger.models.overage_charge import OverageCharge as OverageChargeRow
from creditledger.services.catalog import Plan, get_plan
from creditledger.services.credit_store import AccountTransaction, CreditBucketStore, normalize_shop_domain

logger = logging.getLogger("creditledger.overage")

os.makedirs(LOG_DIR, exist_ok=True)
stripe_logger = logging.getLogger("stripe_creditledger")
if not stripe_logger.handlers:
    handler = logging.FileHandler(os.path.join(LOG_DIR, "stripe.log"))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    stripe_logger.setLevel(logging.INFO)
    stripe_logger.addHandler(handler)

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY


class ChargeStatus(str, Enum):
    ACCRUED = "accrued"
    PENDING = "pending"
    BILLED = "billed"


def is_annual(plan: Plan) -> bool:
    return plan.interval.upper() == "ANNUAL"


@dataclass(frozen=True)
class OverageCharge:
    account_id: str
    quantity: int
    unit_rate_cents: int
    amount_cents: int
    status: str = ChargeStatus.PENDING.value
    billing_key: Optional[str] = None
    provider_ref: Optional[str] = None
    charge_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: OverageChargeRow) -> "OverageCharge":
        return cls(
            account_id=row.account_id,
            quantity=row.quantity,
            unit_rate_cents=row.unit_rate_cents,
            amount_cents=row.amount_cents,
            status=row.status,
            billing_key=row.billing_key,
            provider_ref=row.provider_ref,
            charge_id=row.id,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "quantity": self.quantity,
            "unit_rate_cents": self.unit_rate_cents,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "billing_key": self.billing_key,
            "provider_ref": self.provider_ref,
            "charge_id": self.charge_id,
        }


# ─────────────────────────────────────────────
# PAYMENT GATEWAYS
# ─────────────────────────────────────────────

class PaymentGateway:
    """Blocking provider calls; the calculator runs them off-loop with a timeout."""

    name = "base"

    def has_payment_method(self, account: Account) -> bool:
        raise NotImplementedError

    def create_usage_charge(
        self,
        account: Account,
        amount_cents: int,
        description: str,
        idempotency_key: str,
    ) -> str:
        """Create (or, for a repeated key, return) the provider charge."""
        raise NotImplementedError


class StripePaymentGateway(PaymentGateway):
    name = "stripe"

    def has_payment_method(self, account: Account) -> bool:
        if not STRIPE_SECRET_KEY or not account.billing_customer_id:
            return False
        customer = stripe.Customer.retrieve(account.billing_customer_id)
        if getattr(customer, "deleted", False):
            return False
        settings = customer.get("invoice_settings") or {}
        if settings.get("default_payment_method"):
            return True
        methods = stripe.PaymentMethod.list(customer=account.billing_customer_id, type="card", limit=1)
        return bool(methods.data)

    def create_usage_charge(self, account, amount_cents, description, idempotency_key) -> str:
        item = stripe.InvoiceItem.create(
            customer=account.billing_customer_id,
            amount=amount_cents,
            currency="usd",
            description=description,
            metadata={"account_id": account.id, "billing_key": idempotency_key},
            idempotency_key=idempotency_key,
        )
        stripe_logger.info(
            "Overage invoice item %s for %s: %d cents", item.id, account.id, amount_cents
        )
        return item.id


class MockPaymentGateway(PaymentGateway):
    """TEST_MODE gateway: any account with a customer id can be charged."""

    name = "mock"

    def __init__(
        self,
        delay_seconds: float = 0.0,
        fail_with: Optional[Exception] = None,
        charge_delay_seconds: float = 0.0,
        charge_fail_with: Optional[Exception] = None,
    ):
        self.delay_seconds = delay_seconds
        self.fail_with = fail_with
        self.charge_delay_seconds = charge_delay_seconds
        self.charge_fail_with = charge_fail_with
        self.charges: list = []
        self._refs: Dict[str, str] = {}

    def has_payment_method(self, account: Account) -> bool:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with
        return bool(account.billing_customer_id)

    def create_usage_charge(self, account, amount_cents, description, idempotency_key) -> str:
        if self.charge_delay_seconds:
            time.sleep(self.charge_delay_seconds)
        if self.charge_fail_with is not None:
            raise self.charge_fail_with
        # Same key, same charge (as Stripe idempotency keys behave)
        if idempotency_key in self._refs:
            return self._refs[idempotency_key]
        ref = f"mock_{uuid.uuid4().hex[:12]}"
        self._refs[idempotency_key] = ref
        self.charges.append((account.id, amount_cents, idempotency_key, ref))
        return ref


def default_gateway() -> PaymentGateway:
    if TEST_MODE or not STRIPE_SECRET_KEY:
        return MockPaymentGateway()
    return StripePaymentGateway()


# ─────────────────────────────────────────────
# CALCULATOR
# ─────────────────────────────────────────────

class OverageBillingCalculator:
    def __init__(
        self,
        store: CreditBucketStore,
        gateway: Optional[PaymentGateway] = None,
        timeout_seconds: float = PAYMENT_CHECK_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.gateway = gateway or default_gateway()
        self.timeout_seconds = timeout_seconds

    def unit_rate_cents(self, account: Account) -> int:
        return get_plan(account.plan_handle).overage_unit_cents

    def quote(self, account: Account, quantity: int) -> int:
        return quantity * self.unit_rate_cents(account)

    async def _call(self, account_id: str, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Payment provider timed out after %.1fs for %s", self.timeout_seconds, account_id)
            raise OverageUnavailable(account_id, "payment_check_timeout") from None
        except stripe.StripeError as exc:
            stripe_logger.error("Stripe call failed for %s", account_id, exc_info=exc)
            raise OverageUnavailable(account_id, "payment_provider_error") from exc

    async def spent_this_period(self, tx: AccountTransaction) -> int:
        query = select(func.coalesce(func.sum(OverageChargeRow.amount_cents), 0)).where(
            OverageChargeRow.account_id == tx.account_id
        )
        if tx.account.current_period_start is not None:
            query = query.where(OverageChargeRow.created_at >= tx.account.current_period_start)
        return int((await tx.session.execute(query)).scalar() or 0)

    async def bill_overage(self, tx: AccountTransaction, quantity: int, idempotency_key: str) -> OverageCharge:
        """Record ``quantity`` overage units inside the caller's account transaction."""
        if quantity <= 0:
            raise InvalidAdjustment(f"Overage quantity must be positive, got {quantity}")

        account = tx.account
        plan = get_plan(account.plan_handle)
        unit_rate = plan.overage_unit_cents
        amount = quantity * unit_rate

        has_method = await self._call(account.id, self.gateway.has_payment_method, account)
        if not has_method:
            logger.info("Overage blocked for %s: no payment method on file", account.id)
            raise OverageUnavailable(
                account.id,
                "no_payment_method",
                "Add a payment method to keep generating once your credits run out.",
            )

        spent = await self.spent_this_period(tx)
        if plan.capped_amount_cents and spent + amount > plan.capped_amount_cents:
            logger.info(
                "Overage blocked for %s: %d + %d cents exceeds cap %d",
                account.id, spent, amount, plan.capped_amount_cents,
            )
            raise OverageUnavailable(
                account.id,
                "capped_amount_exceeded",
                "Overage limit reached for this billing period. Raise your spending cap or buy a credit package.",
            )

        if is_annual(plan):
            status, billing_key = ChargeStatus.ACCRUED, None
        else:
            status, billing_key = ChargeStatus.PENDING, f"overage-{account.id}-{idempotency_key}"

        row = OverageChargeRow(
            account_id=account.id,
            quantity=quantity,
            unit_rate_cents=unit_rate,
            amount_cents=amount,
            usage_key=idempotency_key,
            status=status.value,
            billing_key=billing_key,
            created_at=tx.now,
        )
        tx.add(row)
        await tx.session.flush()

        logger.info(
            "Overage %s for %s: %d unit(s) x %d cents = %d cents",
            status.value, account.id, quantity, unit_rate, amount,
        )
        return OverageCharge.from_row(row)

    async def submit_pending(self, account_id: str, billing_key: Optional[str] = None) -> List[OverageCharge]:
        """Send committed ``pending`` charges to the provider; safe to repeat."""
        account_id = normalize_shop_domain(account_id)
        account = await self.store.get_account(account_id)

        query = select(OverageChargeRow).where(
            OverageChargeRow.account_id == account_id,
            OverageChargeRow.status == ChargeStatus.PENDING.value,
        )
        if billing_key:
            query = query.where(OverageChargeRow.billing_key == billing_key)
        async with self.store.session() as session:
            rows = (await session.execute(query.order_by(OverageChargeRow.id))).scalars().all()

        groups: Dict[str, List[OverageChargeRow]] = {}
        for row in rows:
            key = row.billing_key or f"overage-{account_id}-{row.usage_key}"
            groups.setdefault(key, []).append(row)

        charges: List[OverageCharge] = []
        for key, group in groups.items():
            units = sum(r.quantity for r in group)
            amount = sum(r.amount_cents for r in group)
            try:
                ref = await self._call(
                    account_id,
                    self.gateway.create_usage_charge,
                    account,
                    amount,
                    f"Try-on generation - {units} overage credit(s)",
                    key,
                )
            except OverageUnavailable as exc:
                logger.warning(
                    "Overage charge %s for %s left pending (%s), %d cents to reconcile",
                    key, account_id, exc.reason, amount,
                )
                charges.extend(OverageCharge.from_row(r) for r in group)
                continue

            now = self.store.clock()
            async with self.store.session() as session:
                await session.execute(
                    update(OverageChargeRow)
                    .where(
                        OverageChargeRow.id.in_([r.id for r in group]),
                        OverageChargeRow.status == ChargeStatus.PENDING.value,
                    )
                    .values(status=ChargeStatus.BILLED.value, provider_ref=ref, billed_at=now)
                )
                await session.commit()
            logger.info("Overage charge %s billed for %s: %d cents (%s)", key, account_id, amount, ref)
            for r in group:
                r.status = ChargeStatus.BILLED.value
                r.provider_ref = ref
                charges.append(OverageCharge.from_row(r))
        return charges

    async def settle_accrued(self, account_id: str, period_id: str) -> Dict[str, Any]:
        """Turn an annual account's accrued overage into one charge, once per period id."""
        period_id = (period_id or "").strip()
        if not period_id:
            raise InvalidAdjustment("period_id is required to settle overage")

        async def _settle(tx: AccountTransaction) -> Dict[str, Any]:
            try:
                await tx.claim("overage_settlement", period_id)
            except DuplicateTransaction as dup:
                return {**dup.result, "replayed": True}

            rows = (
                await tx.session.execute(
                    select(OverageChargeRow).where(
                        OverageChargeRow.account_id == tx.account_id,
                        OverageChargeRow.status == ChargeStatus.ACCRUED.value,
                    )
                )
            ).scalars().all()
            units = sum(r.quantity for r in rows)
            amount = sum(r.amount_cents for r in rows)
            result: Dict[str, Any] = {
                "period_id": period_id,
                "overage_units": units,
                "amount_cents": amount,
                "billed": False,
                "reason": None,
                "billing_key": None,
            }
            if not rows:
                result["reason"] = "nothing_accrued"
            elif amount < OVERAGE_MIN_SETTLEMENT_CENTS:
                # Stays accrued and rolls into the next settlement
                result["reason"] = "below_minimum"
            else:
                billing_key = f"overage-settlement-{tx.account_id}-{period_id}"
                for row in rows:
                    row.status = ChargeStatus.PENDING.value
                    row.billing_key = billing_key
                result["billed"] = True
                result["billing_key"] = billing_key

            tx.remember("overage_settlement", period_id, result)
            logger.info(
                "Overage settlement %s for %s: %d unit(s), %d cents, billed=%s (%s)",
                period_id, tx.account_id, units, amount, result["billed"], result["reason"],
            )
            return {**result, "replayed": False}

        result = await self.store.run(account_id, _settle)
        if result["billed"]:
            charges = await self.submit_pending(account_id, billing_key=result["billing_key"])
            billed = [c for c in charges if c.status == ChargeStatus.BILLED.value]
            result["status"] = ChargeStatus.BILLED.value if billed else ChargeStatus.PENDING.value
            result["provider_ref"] = billed[0].provider_ref if billed else None
        return result

    async def summary(self, account_id: str) -> Dict[str, Any]:
        account_id = normalize_shop_domain(account_id)
        account = await self.store.get_account(account_id)
        plan = get_plan(account.plan_handle)

        query = select(
            func.coalesce(func.sum(OverageChargeRow.quantity), 0),
            func.coalesce(func.sum(OverageChargeRow.amount_cents), 0),
        ).where(OverageChargeRow.account_id == account_id)
        if account.current_period_start is not None:
            query = query.where(OverageChargeRow.created_at >= account.current_period_start)
        # Accrued and pending totals are outstanding money, whatever period they came from
        outstanding_query = (
            select(OverageChargeRow.status, func.coalesce(func.sum(OverageChargeRow.amount_cents), 0))
            .where(
                OverageChargeRow.account_id == account_id,
                OverageChargeRow.status != ChargeStatus.BILLED.value,
            )
            .group_by(OverageChargeRow.status)
        )
        async with self.store.session() as session:
            units, amount = (await session.execute(query)).one()
            outstanding = dict((await session.execute(outstanding_query)).all())

        units, amount = int(units or 0), int(amount or 0)
        capped = plan.capped_amount_cents
        percentage = round(amount * 100 / capped, 2) if capped else 0.0

        return {
            "account_id": account_id,
            "period_id": account.current_period_id,
            "period_start": account.current_period_start,
            "billing_mode": "monthly_settlement" if is_annual(plan) else "immediate",
            "overage_units": units,
            "overage_amount_cents": amount,
            "accrued_amount_cents": int(outstanding.get(ChargeStatus.ACCRUED.value, 0)),
            "pending_amount_cents": int(outstanding.get(ChargeStatus.PENDING.value, 0)),
            "unit_rate_cents": plan.overage_unit_cents,
            "capped_amount_cents": capped,
            "cap_used_percent": percentage,
            "approaching_cap": bool(capped) and percentage >= OVERAGE_CAP_WARNING_PERCENT,
        }
