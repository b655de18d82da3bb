# /creditledger/models/credit_ledger.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime

from creditledger.core.database import Base


class CreditLedger(Base):
    """Credit transactions ledger - one row per bucket adjustment."""
    __tablename__ = "credit_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    # Bucket: trial, coupon, plan, purchased
    bucket: Mapped[str] = mapped_column(String(20))

    # Units (positive for credit, negative for debit)
    delta: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)

    # Reason: trial_grant, consumption, period_renewal, coupon_redemption, credit_purchase, refund
    reason: Mapped[str] = mapped_column(String(40))

    # Reference ID (usage idempotency key, period id, transaction id)
    ref_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
