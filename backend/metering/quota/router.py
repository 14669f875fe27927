from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from metering.admin.rbac import require_scope
from metering.auth.deps import get_current_user
from metering.auth.models import User
from metering.db.session import get_db
from metering.quota.models import ApiCallPack, ApiUsageLog
from metering.quota.schemas import (
    AddPackRequest,
    AddSubscriptionCallsRequest,
    CallPackOut,
    CallPacksResponse,
    QuotaOut,
    QuotaWithTierOut,
    RecentUsageResponse,
    SetTierRequest,
    TierChangeResponse,
    TiersListResponse,
    UsageStatsResponse,
)
from metering.quota.service import (
    add_pack_calls,
    add_subscription_calls,
    get_call_packs,
    get_recent_usage,
    get_usage_stats,
    get_user_quota,
    get_user_quota_with_tier,
    list_tiers,
    set_user_tier,
    tier_to_dict,
)

router = APIRouter()
admin_router = APIRouter()


def _to_pack_out(row: ApiCallPack) -> dict:
    return {
        "id": row.id,
        "pack_size": row.pack_size,
        "calls_remaining": row.calls_remaining,
        "stripe_session_id": row.stripe_session_id,
        "purchased_at": row.purchased_at,
    }


def _to_usage_out(row: ApiUsageLog) -> dict:
    return {
        "id": row.id,
        "api_key_id": row.api_key_id,
        "endpoint": row.endpoint,
        "method": row.method,
        "status_code": row.status_code,
        "response_time_ms": row.response_time_ms,
        "ip_address": row.ip_address,
        "metadata": row.metadata_json or {},
        "called_at": row.called_at,
    }


@router.get("/tiers", response_model=TiersListResponse)
def tiers(db: Session = Depends(get_db)):
    return {"tiers": [tier_to_dict(t) for t in list_tiers(db)]}


@router.get("", response_model=QuotaWithTierOut)
def my_quota(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return get_user_quota_with_tier(db, current_user.id)


@router.get("/usage", response_model=UsageStatsResponse)
def my_usage(
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return {"days": days, "usage": get_usage_stats(db, current_user.id, days=days)}


@router.get("/usage/recent", response_model=RecentUsageResponse)
def my_recent_usage(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return {"calls": [_to_usage_out(r) for r in get_recent_usage(db, current_user.id, limit=limit)]}


@router.get("/packs", response_model=CallPacksResponse)
def my_packs(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return {"packs": [_to_pack_out(p) for p in get_call_packs(db, current_user.id)]}


# --- Admin ---

@admin_router.get("/users/{user_id}", response_model=QuotaWithTierOut)
def user_quota(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "quota:read")
    return get_user_quota_with_tier(db, user_id)


@admin_router.put("/users/{user_id}/tier", response_model=TierChangeResponse)
def change_tier(
    user_id: str,
    payload: SetTierRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "quota:write")

    change = set_user_tier(db, user_id, payload.tier.strip().lower())
    if not change.ok:
        raise HTTPException(status_code=404, detail=f"Tier not found: {payload.tier}")

    return {
        "user_id": user_id,
        "tier": change.tier,
        "subscription_calls": change.subscription_calls,
        "total_calls": change.total_calls,
    }


@admin_router.post("/users/{user_id}/subscription", response_model=QuotaOut)
def top_up_subscription(
    user_id: str,
    payload: AddSubscriptionCallsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "quota:write")
    add_subscription_calls(db, user_id, payload.calls, reset_at=payload.reset_at)
    return get_user_quota(db, user_id)


@admin_router.post("/users/{user_id}/packs", response_model=CallPackOut, status_code=201)
def add_pack(
    user_id: str,
    payload: AddPackRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "quota:write")
    pack = add_pack_calls(db, user_id, payload.calls, stripe_session_id=payload.stripe_session_id)
    return _to_pack_out(pack)
