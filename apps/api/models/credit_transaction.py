"""CreditTransaction model: append-only balance-affecting events."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


TRANSACTION_KINDS = ("spend", "refund", "bonus", "daily_refresh")


class CreditTransaction(Base):
    """Immutable credit transaction. Amounts are signed; spends are negative."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_transactions_user_idempotency_key"),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("credit_accounts.user_id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    related_transaction_id = Column(String, ForeignKey("credit_transactions.id"), nullable=True, index=True)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
