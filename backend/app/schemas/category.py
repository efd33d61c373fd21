"""Category and categorization rule schemas."""

from typing import Literal

from pydantic import BaseModel

MatchType = Literal["contains", "starts_with", "ends_with", "exact", "regex"]


class CategoryCreate(BaseModel):
    name: str
    description: str | None = None
    parent_id: int | None = None
    icon: str | None = None
    color: str | None = None
    is_system: bool = False


class CategoryUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    parent_id: int | None = None
    icon: str | None = None
    color: str | None = None


class CategoryResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    parent_id: int | None
    icon: str | None
    color: str | None
    is_system: bool

    model_config = {"from_attributes": True}


class CategorizationRuleCreate(BaseModel):
    category_id: int
    pattern: str
    match_type: MatchType = "contains"
    case_sensitive: bool = False
    priority: int = 0
    enabled: bool = True


class CategorizationResult(BaseModel):
    """Outcome of categorizing one item; all ids are None when nothing matched."""

    transaction_id: int | None = None
    category_id: int | None = None
    category_name: str | None = None
    rule_id: int | None = None

    @property
    def matched(self) -> bool:
        return self.category_id is not None


class CategoryStatistics(BaseModel):
    category_id: int
    transaction_count: int
    total_amount: str
    average_amount: str
