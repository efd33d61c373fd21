"""Transaction model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, TimestampMixin

TRANSACTION_SOURCES = ("upload", "manual", "api", "synthetic")


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)  # negative = debit
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    balance_after: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    merchant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    merchant_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="upload")
    reference_number: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # "metadata" is reserved on declarative classes, hence the attribute name
    extra: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)

    # Relationships
    account = relationship("Account", back_populates="transactions")
    category = relationship("Category", back_populates="transactions")

    __table_args__ = (
        Index("idx_transactions_account_timestamp", "account_id", "timestamp"),
        Index("idx_transactions_account_category", "account_id", "category_id"),
    )
