# /creditledger/models/account.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, JSON

from creditledger.core.database import Base


class Account(Base):
    """One merchant account, keyed by its normalized shop domain."""
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Plan handle: pro-monthly, pro-annual
    plan_handle: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    # Payment-provider customer used for overage charges
    billing_customer_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    # Trial window (duration is fixed, see TRIAL_DAYS)
    trial_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_end_reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    # Usage thresholds the merchant was already warned about, e.g. [80, 90]
    trial_notifications_sent: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Last applied billing period
    current_period_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Bumped on every committed ledger transaction (optimistic concurrency)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
