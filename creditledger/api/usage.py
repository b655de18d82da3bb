# /creditledger/api/usage.py
"""Usage metering for the generation subsystem (internal token)."""

from fastapi import APIRouter, Depends

from creditledger.api.deps import ledger_dependency, require_internal_token
from creditledger.schemas.credits import ConsumeRequest, ConsumeResponse, RefundRequest, RefundResponse
from creditledger.services.ledger import CreditLedgerService

router = APIRouter(prefix="/api/usage", tags=["usage"], dependencies=[Depends(require_internal_token)])


@router.post("/consume", response_model=ConsumeResponse)
async def consume_credits(req: ConsumeRequest, ledger: CreditLedgerService = Depends(ledger_dependency)):
    """Debit one generation's worth of credits; 402 when overage cannot be billed."""
    result = await ledger.engine.consume(req.account_id, req.quantity, req.idempotency_key)
    return {**result.as_dict(), "replayed": result.replayed}


@router.post("/refund", response_model=RefundResponse)
async def refund_credits(req: RefundRequest, ledger: CreditLedgerService = Depends(ledger_dependency)):
    return await ledger.engine.refund(req.account_id, req.idempotency_key, req.reason)
