# /creditledger/models/payment.py
from datetime import datetime
from typing import Optional, Any
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime, JSON

from creditledger.core.database import Base


class Payment(Base):
    """Credit package purchases."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    # Payment provider: stripe, shopify, mock
    provider: Mapped[str] = mapped_column(String(40))

    # Provider reference / checkout session id
    provider_ref: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    package_id: Mapped[str] = mapped_column(String(40))
    credits: Mapped[int] = mapped_column(Integer)

    # Price in cents
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    # Status: pending, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Raw provider metadata (stripe event ids, checkout metadata)
    raw: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
