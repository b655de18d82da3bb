# /creditledger/api/accounts.py

from fastapi import APIRouter, Depends

from creditledger.api.deps import ledger_dependency, require_internal_token
from creditledger.schemas.credits import (
    ActivateRequest,
    ActivateResponse,
    OverageReconcileResponse,
    RolloverResponse,
    TrialEndResponse,
    TrialNotificationResponse,
)
from creditledger.services.ledger import CreditLedgerService
from creditledger.services.overage import ChargeStatus

router = APIRouter(prefix="/api/accounts", tags=["accounts"], dependencies=[Depends(require_internal_token)])


@router.post("/activate", response_model=ActivateResponse)
async def activate_account(req: ActivateRequest, ledger: CreditLedgerService = Depends(ledger_dependency)):
    """First install / subscription: create the buckets and grant the trial."""
    status = await ledger.trial.start_trial(
        req.account_id,
        plan_handle=req.plan_handle,
        billing_customer_id=req.billing_customer_id,
    )
    balances = await ledger.store.get_balances(req.account_id)
    return {**status, "balances": balances.as_dict()}


@router.post("/{account_id}/trial/end", response_model=TrialEndResponse)
async def end_trial(account_id: str, ledger: CreditLedgerService = Depends(ledger_dependency)):
    return await ledger.trial.end_trial(account_id)


@router.post("/{account_id}/trial/notifications/{threshold}", response_model=TrialNotificationResponse)
async def mark_trial_notification(
    account_id: str,
    threshold: int,
    ledger: CreditLedgerService = Depends(ledger_dependency),
):
    """Called once the usage warning for ``threshold`` was delivered."""
    return await ledger.trial.mark_notification_sent(account_id, threshold)


@router.post("/{account_id}/overage/reconcile", response_model=OverageReconcileResponse)
async def reconcile_overage(account_id: str, ledger: CreditLedgerService = Depends(ledger_dependency)):
    """Retry provider charges left pending by a failed or timed-out call."""
    charges = await ledger.overage.submit_pending(account_id)
    billed = sum(1 for c in charges if c.status == ChargeStatus.BILLED.value)
    return {"submitted": len(charges), "billed": billed, "pending": len(charges) - billed}


@router.post("/{account_id}/rollover", response_model=RolloverResponse)
async def monthly_rollover(account_id: str, ledger: CreditLedgerService = Depends(ledger_dependency)):
    """Annual plans: settle last month's overage and top up this month's credits."""
    return await ledger.renewals.on_monthly_rollover(account_id)
