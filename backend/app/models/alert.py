"""Alert model."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, TimestampMixin

ALERT_STATUSES = ("open", "reviewing", "resolved", "false_positive", "escalated")
RESOLVING_STATUSES = ("resolved", "false_positive")


class Alert(Base, TimestampMixin):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )
    rule_id: Mapped[int] = mapped_column(ForeignKey("rules.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # evidence snapshot
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)  # analyst user id
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Relationships
    rule = relationship("Rule", back_populates="alerts")
    transaction = relationship("Transaction")

    __table_args__ = (
        Index("idx_alerts_user_status", "user_id", "status"),
        Index("idx_alerts_rule_created", "rule_id", "created_at"),
    )
