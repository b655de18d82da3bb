# /creditledger/models/overage_charge.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime

from creditledger.core.database import Base


class OverageCharge(Base):
    """Metered charge billed once every bucket was empty."""
    __tablename__ = "overage_charges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    quantity: Mapped[int] = mapped_column(Integer)

    # Amounts in cents (USD)
    unit_rate_cents: Mapped[int] = mapped_column(Integer)
    amount_cents: Mapped[int] = mapped_column(Integer)

    # Usage idempotency key that triggered the charge
    usage_key: Mapped[str] = mapped_column(String(190))

    # Status: accrued (annual, settled monthly), pending (not yet confirmed by provider), billed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)

    # Provider idempotency key; rows settled together share one
    billing_key: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)

    # Provider reference (invoice item id, mock id)
    provider_ref: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    billed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
