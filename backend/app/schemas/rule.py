"""Detection rule schemas.

Each rule type has its own condition model with named, typed parameters and
explicit defaults. Stored rule conditions are validated into one of them
through the ``type`` discriminator; both ``lookbackDays`` and
``lookback_days`` spellings are accepted.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _Condition(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LargeTransactionCondition(_Condition):
    type: Literal["large_transaction"] = "large_transaction"
    multiplier: Decimal = Field(default=Decimal("3"), gt=0)
    lookback_days: int = Field(default=30, gt=0)


class VelocityCondition(_Condition):
    type: Literal["velocity"] = "velocity"
    count: int = Field(default=10, gt=0)
    window_minutes: int = Field(default=60, gt=0)


class StructuringCondition(_Condition):
    type: Literal["structuring"] = "structuring"
    threshold: Decimal = Field(default=Decimal("10000"), gt=0)
    tolerance: Decimal = Field(default=Decimal("0.1"), ge=0, lt=1)
    count: int = Field(default=3, gt=0)
    window_hours: int = Field(default=24, gt=0)


class UnusualPatternCondition(_Condition):
    type: Literal["unusual_pattern"] = "unusual_pattern"
    std_dev_multiplier: Decimal = Field(default=Decimal("2.5"), gt=0)
    lookback_days: int = Field(default=90, gt=0)
    min_history: int = Field(default=10, gt=0)


RuleCondition = Annotated[
    LargeTransactionCondition | VelocityCondition | StructuringCondition | UnusualPatternCondition,
    Field(discriminator="type"),
]

condition_adapter: TypeAdapter[RuleCondition] = TypeAdapter(RuleCondition)

EVALUATED_RULE_TYPES = ("large_transaction", "velocity", "structuring", "unusual_pattern")


def build_condition(rule_type: str, condition: dict[str, Any] | None) -> RuleCondition:
    """Validate a stored condition bag for ``rule_type``.

    Raises pydantic's ``ValidationError`` for an unknown type or bad values.
    """
    return condition_adapter.validate_python({**(condition or {}), "type": rule_type})


class RuleCreate(BaseModel):
    name: str
    description: str = ""
    type: str
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    condition: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    auto_resolve: bool = False


class RuleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    severity: Literal["low", "medium", "high", "critical"] | None = None
    condition: dict[str, Any] | None = None
    enabled: bool | None = None
    auto_resolve: bool | None = None


class RuleResponse(BaseModel):
    id: int
    name: str
    description: str
    type: str
    severity: str
    condition: dict[str, Any]
    enabled: bool
    auto_resolve: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class Violation(BaseModel):
    """A rule violation; ``context`` becomes the alert's evidence snapshot."""

    violated: bool = True
    context: dict[str, Any]
