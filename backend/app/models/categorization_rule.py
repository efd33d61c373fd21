"""Categorization rule model."""

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin

MATCH_TYPES = ("contains", "starts_with", "ends_with", "exact", "regex")


class CategorizationRule(Base, TimestampMixin):
    """A pattern that assigns a category to transactions it matches.

    The pattern is tested against ``description + " " + merchant`` according
    to ``match_type``. Rules are checked by descending ``priority`` and the
    first match wins.
    """

    __tablename__ = "categorization_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False, index=True)
    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), default="contains")
    case_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)  # higher = checked first
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    category = relationship("Category", back_populates="rules", lazy="joined")
