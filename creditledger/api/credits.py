# /creditledger/api/credits.py
"""Merchant-facing credits and billing endpoints."""

import uuid
from datetime import datetime
from typing import List

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from creditledger.api.deps import get_current_account, ledger_dependency
from creditledger.core.config import FRONTEND_URL, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, TEST_MODE
from creditledger.models.payment import Payment
from creditledger.schemas.credits import (
    BalancesResponse,
    CouponRedeemRequest,
    CreditGrantResponse,
    CreditTransaction,
    OverageSummaryResponse,
    PackageResponse,
    PlanResponse,
    PurchaseRequest,
    PurchaseResponse,
    TrialStatusResponse,
)
from creditledger.services.catalog import get_package, list_packages, list_plans, normalize_coupon_code
from creditledger.services.ledger import CreditLedgerService
from creditledger.services.overage import stripe_logger

router = APIRouter(prefix="/api/credits", tags=["credits"])


def _price_display(cents: int) -> str:
    return f"${cents / 100:.2f}"


# ─────────────────────────────────────────────
# ENDPOINTS
# ─────────────────────────────────────────────

@router.get("/balance", response_model=BalancesResponse)
async def get_credit_balance(
    account_id: str = Depends(get_current_account),
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    """Per-bucket balances for the authenticated shop."""
    balances = await ledger.store.get_balances(account_id)
    return balances.as_dict()


@router.get("/history", response_model=List[CreditTransaction])
async def get_credit_history(
    account_id: str = Depends(get_current_account),
    ledger: CreditLedgerService = Depends(ledger_dependency),
    limit: int = 50,
):
    """Get credit transaction history."""
    rows = await ledger.store.history(account_id, limit=max(1, min(limit, 500)))
    return [
        CreditTransaction(
            id=r.id,
            bucket=r.bucket,
            delta=r.delta,
            balance_after=r.balance_after,
            reason=r.reason,
            ref_id=r.ref_id,
            created_at=r.created_at,
        )
        for r in rows
    ]


@router.get("/packages", response_model=List[PackageResponse])
async def get_credit_packages():
    return [
        PackageResponse(price_display=_price_display(p.price_cents), **p.model_dump())
        for p in list_packages()
    ]


@router.get("/plans", response_model=List[PlanResponse])
async def get_subscription_plans():
    return [
        PlanResponse(price_display=_price_display(p.price_cents), **p.model_dump(exclude={"currency"}))
        for p in list_plans()
    ]


@router.get("/overage", response_model=OverageSummaryResponse)
async def get_overage_summary(
    account_id: str = Depends(get_current_account),
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    return await ledger.overage.summary(account_id)


@router.get("/trial", response_model=TrialStatusResponse)
async def get_trial_status(
    account_id: str = Depends(get_current_account),
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    return await ledger.trial.get_status(account_id)


@router.post("/coupons/redeem", response_model=CreditGrantResponse)
async def redeem_coupon(
    req: CouponRedeemRequest,
    account_id: str = Depends(get_current_account),
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    transaction_id = (req.transaction_id or "").strip()
    if not transaction_id:
        transaction_id = f"coupon-{normalize_coupon_code(req.coupon_code)}-{uuid.uuid4()}"
    return await ledger.coupons.redeem(
        account_id,
        req.coupon_code,
        transaction_id,
        credit_amount=req.credit_amount,
    )


@router.post("/purchase", response_model=PurchaseResponse)
async def purchase_credits(
    req: PurchaseRequest,
    account_id: str = Depends(get_current_account),
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    """Initiate a credit package purchase."""
    package = get_package(req.package_id)
    if not package:
        raise HTTPException(status_code=400, detail="Invalid package")

    payment_id = str(uuid.uuid4())
    await ledger.store.ensure_account(account_id)

    # TEST MODE: instant completion without Stripe, for local development.
    if TEST_MODE:
        async with ledger.store.session() as db:
            db.add(Payment(
                id=payment_id,
                account_id=account_id,
                provider="mock",
                provider_ref="mock",
                package_id=package.id,
                credits=package.credits,
                amount_cents=package.price_cents,
                currency=package.currency,
                status="pending",
                raw={"package_id": package.id, "package_credits": package.credits, "test_mode": True},
                created_at=datetime.utcnow(),
            ))
            await db.commit()

        await ledger.purchases.confirm(account_id, package.id, payment_id, payment_id=payment_id)
        return PurchaseResponse(payment_id=payment_id, checkout_url=None, status="completed")

    if not STRIPE_SECRET_KEY:
        raise HTTPException(status_code=500, detail="Stripe is not configured")

    async with ledger.store.session() as db:
        payment = Payment(
            id=payment_id,
            account_id=account_id,
            provider="stripe",
            provider_ref=None,
            package_id=package.id,
            credits=package.credits,
            amount_cents=package.price_cents,
            currency=package.currency,
            status="pending",
            raw={"package_id": package.id, "package_credits": package.credits, "package_name": package.name},
            created_at=datetime.utcnow(),
        )
        db.add(payment)
        await db.commit()

        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": package.currency.lower(),
                            "product_data": {"name": package.name},
                            "unit_amount": package.price_cents,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{FRONTEND_URL}/credits?success=1&payment_id={payment_id}",
                cancel_url=f"{FRONTEND_URL}/credits?canceled=1",
                metadata={
                    "payment_id": payment_id,
                    "account_id": account_id,
                    "package_id": package.id,
                    "package_credits": package.credits,
                },
            )
        except stripe.StripeError as exc:
            stripe_logger.error("Stripe session creation failed", exc_info=exc)
            raise HTTPException(status_code=502, detail="Stripe session creation failed; see logs/stripe.log")

        payment.provider_ref = session.id
        await db.commit()

    return PurchaseResponse(payment_id=payment_id, checkout_url=session.url, status="pending")


@router.post("/webhook/stripe")
async def stripe_webhook(
    request: Request,
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    """Stripe webhook to finalize credit purchases."""
    if not STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=400, detail="Stripe webhook not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(
            payload=payload, sig_header=sig_header, secret=STRIPE_WEBHOOK_SECRET
        )
    except (ValueError, stripe.SignatureVerificationError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid webhook: {exc}")

    if event["type"] != "checkout.session.completed":
        return {"received": True}

    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    payment_id = metadata.get("payment_id") or session.get("id")
    account_id = metadata.get("account_id")
    package_id = metadata.get("package_id")
    if not account_id or not package_id:
        stripe_logger.warning("Checkout %s completed without ledger metadata", session.get("id"))
        return {"received": True}

    async with ledger.store.session() as db:
        payment = await db.get(Payment, payment_id)
        if payment is not None:
            payment.provider_ref = session.get("id")
            merged = dict(payment.raw or {})
            merged.update(metadata)
            payment.raw = merged
            await db.commit()

    result = await ledger.purchases.confirm(account_id, package_id, payment_id, payment_id=payment_id)
    stripe_logger.info(
        "Checkout %s confirmed for %s: +%s credits (replayed=%s)",
        session.get("id"), account_id, result.get("credits_added"), result.get("replayed"),
    )
    return {"received": True}
