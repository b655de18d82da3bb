# /creditledger/models/billing_period.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime, UniqueConstraint

from creditledger.core.database import Base


class BillingPeriod(Base):
    """Billing periods whose included credits were added to the plan bucket."""
    __tablename__ = "billing_periods"
    __table_args__ = (
        UniqueConstraint("account_id", "period_id", name="uq_billing_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    period_id: Mapped[str] = mapped_column(String(190))

    included_credits: Mapped[int] = mapped_column(Integer)
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    applied_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
