"""Alert schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AlertStatus = Literal["open", "reviewing", "resolved", "false_positive", "escalated"]


class AlertUpdate(BaseModel):
    """Generic alert update. Rule and transaction links are not updatable."""

    status: AlertStatus | None = None
    notes: str | None = None


class ResolveAlert(BaseModel):
    notes: str | None = None


class AlertResponse(BaseModel):
    id: int
    user_id: int
    transaction_id: int | None = None
    rule_id: int
    status: str
    notes: str | None = None
    context: dict[str, Any] | None = None
    assigned_to: int | None = None
    resolved_at: datetime | None = None
    resolved_by: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AlertStatistics(BaseModel):
    total: int = 0
    open: int = 0
    reviewing: int = 0
    resolved: int = 0
    false_positive: int = Field(default=0, serialization_alias="falsePositive")
    escalated: int = 0
