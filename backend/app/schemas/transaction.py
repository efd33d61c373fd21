"""Transaction schemas for request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class TransactionCreate(BaseModel):
    account_id: int
    timestamp: datetime
    description: str
    amount: Decimal
    currency: str = "USD"
    merchant: str | None = None
    merchant_category: str | None = None
    category_id: int | None = None
    source: Literal["upload", "manual", "api", "synthetic"] = "manual"
    reference_number: str | None = None
    idempotency_key: str = Field(min_length=1)


class TransactionResponse(BaseModel):
    id: int
    account_id: int
    timestamp: datetime
    description: str
    amount: Decimal
    currency: str
    merchant: str | None = None
    merchant_category: str | None = None
    category_id: int | None = None
    source: str
    reference_number: str | None = None
    idempotency_key: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ImportRowError(BaseModel):
    row: int
    error: str


class ImportResult(BaseModel):
    successful: int = 0
    failed: int = 0
    total: int = 0
    duplicates: int = 0  # subset of successful that already existed
    errors: list[ImportRowError] = Field(default_factory=list)


class ImportProgress(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
