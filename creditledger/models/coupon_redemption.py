# /creditledger/models/coupon_redemption.py
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime

from creditledger.core.database import Base


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    # Upper-cased coupon code
    code: Mapped[str] = mapped_column(String(60), index=True)
    credits: Mapped[int] = mapped_column(Integer)
    transaction_id: Mapped[str] = mapped_column(String(190))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
