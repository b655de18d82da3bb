# /creditledger/models/credit_bucket.py
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime, UniqueConstraint, CheckConstraint

from creditledger.core.database import Base


class CreditBucket(Base):
    """Spendable balance of one credit source for one account."""
    __tablename__ = "credit_buckets"
    __table_args__ = (
        UniqueConstraint("account_id", "source", name="uq_credit_bucket_account_source"),
        CheckConstraint("balance >= 0", name="ck_credit_bucket_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    # Source: trial, coupon, plan, purchased
    source: Mapped[str] = mapped_column(String(20))

    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Everything ever credited to this bucket
    lifetime_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
