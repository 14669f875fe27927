from typing import Literal

from pydantic import AnyHttpUrl, BaseModel


class ScanRequest(BaseModel):
    url: AnyHttpUrl
    scan_type: Literal["basic", "gtmetrix"] = "basic"


class ScanAccepted(BaseModel):
    scan_id: str
    status: str
    url: str
    scan_type: str
    tier: str
    cost: int
    daily_remaining: int | None = None
    monthly_remaining: int | None = None
    calls_remaining: int | None = None
