from datetime import datetime

from pydantic import BaseModel, Field


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    expires_at: datetime | None = None


class ApiKeyOut(BaseModel):
    id: str
    user_id: str
    name: str
    key_prefix: str
    is_active: bool
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime


class ApiKeyCreatedResponse(ApiKeyOut):
    # Shown once; only the hash is stored.
    key: str


class ApiKeysListResponse(BaseModel):
    keys: list[ApiKeyOut]
