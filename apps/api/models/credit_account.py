"""CreditAccount model: one materialized balance row per user."""

from sqlalchemy import CheckConstraint, Column, Date, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """Per-user balance cache over the credit transaction log."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        CheckConstraint("daily_quota > 0", name="ck_credit_accounts_daily_quota_positive"),
    )

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False)
    daily_quota = Column(Integer, nullable=False)
    last_refresh_date = Column(Date, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
