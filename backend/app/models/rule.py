"""Detection rule model."""

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, TimestampMixin

RULE_TYPES = (
    "large_transaction",
    "velocity",
    "structuring",
    "unusual_pattern",
    "foreign_transaction",
    "custom",
)
RULE_SEVERITIES = ("low", "medium", "high", "critical")


class Rule(Base, TimestampMixin):
    """An AML / fraud detection rule.

    ``condition`` holds the type-specific parameters as stored JSON; the rule
    engine validates it into one of the typed condition models in
    ``app.schemas.rule`` before evaluating.
    """

    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="custom")
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    condition: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_resolve: Mapped[bool] = mapped_column(Boolean, default=False)

    alerts = relationship("Alert", back_populates="rule")
