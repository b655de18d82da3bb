# /creditledger/api/webhooks.py
"""Billing notifications from the platform: HMAC-signed, safe to redeliver."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from creditledger.api.deps import ledger_dependency, verify_webhook_signature
from creditledger.schemas.credits import (
    CreditGrantResponse,
    PeriodRenewedRequest,
    PeriodRenewedResponse,
    PurchaseConfirmedRequest,
    TrialEndedRequest,
    TrialEndResponse,
)
from creditledger.services.ledger import CreditLedgerService
from creditledger.services.trial_manager import TrialEndReason

logger = logging.getLogger("creditledger.webhooks")

router = APIRouter(
    prefix="/api/webhooks/billing",
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_signature)],
)


@router.post("/period-renewed", response_model=PeriodRenewedResponse)
async def period_renewed(req: PeriodRenewedRequest, ledger: CreditLedgerService = Depends(ledger_dependency)):
    result = await ledger.renewals.on_period_renewed(
        req.account_id,
        req.period_id,
        req.included_credits,
        period_start=req.period_start,
        period_end=req.period_end,
    )
    return {"received": True, **result}


@router.post("/purchase-confirmed", response_model=CreditGrantResponse)
async def purchase_confirmed(req: PurchaseConfirmedRequest, ledger: CreditLedgerService = Depends(ledger_dependency)):
    return await ledger.purchases.confirm(
        req.account_id,
        req.package_id,
        req.transaction_id,
        credit_amount=req.credit_amount,
    )


@router.post("/trial-ended", response_model=TrialEndResponse)
async def trial_ended(req: TrialEndedRequest, ledger: CreditLedgerService = Depends(ledger_dependency)):
    try:
        reason = TrialEndReason(req.reason)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown trial end reason {req.reason!r}")
    return await ledger.trial.end_trial(req.account_id, reason)
