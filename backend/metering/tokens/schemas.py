from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class WalletOut(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_spent: int


class TransactionOut(BaseModel):
    id: int
    type: str
    source: str
    amount: int
    balance_after: int
    description: str
    reference_id: str | None = None
    reference_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class TransactionHistoryResponse(BaseModel):
    transactions: list[TransactionOut]


class SpendRequest(BaseModel):
    feature_code: str = Field(min_length=1, max_length=64)
    reference_id: str | None = Field(default=None, max_length=128)


class SpendResponse(BaseModel):
    transaction: TransactionOut
    balance: int


class PricingOut(BaseModel):
    feature_code: str
    feature_name: str
    tokens_required: int
    description: str | None = None


class PricingListResponse(BaseModel):
    pricing: list[PricingOut]


class PricingPutRequest(BaseModel):
    feature_name: str = Field(min_length=1, max_length=120)
    tokens_required: int = Field(ge=1, le=1_000_000)
    description: str | None = Field(default=None, max_length=500)


class CreditRequest(BaseModel):
    amount: int = Field(ge=1, le=100_000_000)
    description: str = Field(min_length=1, max_length=500)
    source: str = Field(default="admin_grant", min_length=1, max_length=64)
    idempotency_key: str | None = Field(default=None, max_length=128)


class AdjustRequest(BaseModel):
    amount: int = Field(ge=-100_000_000, le=100_000_000)
    description: str = Field(min_length=1, max_length=500)


class LedgerCheckResponse(BaseModel):
    user_id: str
    ok: bool
    transactions: int
    balance: int
    problems: list[str]
