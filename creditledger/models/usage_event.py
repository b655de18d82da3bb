# /creditledger/models/usage_event.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime, UniqueConstraint

from creditledger.core.database import Base


class UsageEvent(Base):
    """One consumption attempt and how it was paid for."""
    __tablename__ = "usage_events"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_usage_event_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    idempotency_key: Mapped[str] = mapped_column(String(190))

    quantity: Mapped[int] = mapped_column(Integer)

    # Debit breakdown
    trial_used: Mapped[int] = mapped_column(Integer, default=0)
    coupon_used: Mapped[int] = mapped_column(Integer, default=0)
    plan_used: Mapped[int] = mapped_column(Integer, default=0)
    purchased_used: Mapped[int] = mapped_column(Integer, default=0)
    overage_units: Mapped[int] = mapped_column(Integer, default=0)

    overage_charge_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("overage_charges.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
