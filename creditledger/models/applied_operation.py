# /creditledger/models/applied_operation.py
from datetime import datetime
from typing import Optional, Any
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime, JSON, UniqueConstraint

from creditledger.core.database import Base


class AppliedOperation(Base):
    """Idempotency keys already applied to an account, with their result."""
    __tablename__ = "applied_operations"
    __table_args__ = (
        UniqueConstraint("account_id", "kind", "key", name="uq_applied_operation"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    # Kind: consume, refund, period_renewal, coupon, purchase, activation
    kind: Mapped[str] = mapped_column(String(30))
    key: Mapped[str] = mapped_column(String(190))

    # Response returned to the first caller, replayed on duplicates
    result: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
