from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from metering.admin.rbac import require_scope
from metering.auth.deps import get_current_user
from metering.auth.models import User
from metering.core.clock import utcnow
from metering.core.config import settings
from metering.db.session import get_db
from metering.ratelimit.limiter import TIER_LIMITS
from metering.ratelimit.models import RateLimitOverride
from metering.ratelimit.overrides import create_override, deactivate_override, get_active_overrides
from metering.ratelimit.report import get_rate_limit_stats, send_hourly_rate_limit_report
from metering.ratelimit.schemas import (
    OverrideCreateRequest,
    OverrideOut,
    OverridesListResponse,
    SendReportRequest,
    SendReportResponse,
)

router = APIRouter()


def _to_override_out(row: RateLimitOverride) -> dict:
    return {
        "id": row.id,
        "target_type": row.target_type,
        "target_id": row.target_id,
        "max_per_minute": row.max_per_minute,
        "max_per_day": row.max_per_day,
        "reason": row.reason,
        "created_by": row.created_by,
        "expires_at": row.expires_at,
        "is_active": bool(row.is_active),
        "created_at": row.created_at,
    }


@router.get("/tiers")
def tier_limits(current_user: User = Depends(get_current_user)):
    require_scope(current_user, "ratelimit:read")
    return {
        "tiers": {
            name: {
                "window_seconds": limits.window_seconds,
                "max_requests": limits.max_requests,
                "daily_max": limits.daily_max,
            }
            for name, limits in TIER_LIMITS.items()
        }
    }


@router.get("/stats")
def stats(
    hours: int = Query(default=24, ge=1, le=24 * 31),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "ratelimit:read")
    end = utcnow()
    return get_rate_limit_stats(db, end - timedelta(hours=hours), end)


@router.get("/overrides", response_model=OverridesListResponse)
def list_overrides(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "ratelimit:read")
    return {"overrides": [_to_override_out(o) for o in get_active_overrides(db)]}


@router.post("/overrides", response_model=OverrideOut, status_code=201)
def add_override(
    payload: OverrideCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "ratelimit:write")
    row = create_override(
        db,
        target_type=payload.target_type,
        target_id=payload.target_id.strip(),
        max_per_minute=payload.max_per_minute,
        max_per_day=payload.max_per_day,
        created_by=current_user.id,
        reason=payload.reason,
        expires_at=payload.expires_at,
        cache=request.app.state.override_cache,
    )
    return _to_override_out(row)


@router.delete("/overrides/{override_id}")
def remove_override(
    override_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "ratelimit:write")
    if not deactivate_override(db, override_id, cache=request.app.state.override_cache):
        raise HTTPException(status_code=404, detail="Override not found")
    return {"deactivated": True, "override_id": override_id}


@router.post("/report", response_model=SendReportResponse)
def send_report(
    request: Request,
    payload: SendReportRequest | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "ratelimit:write")

    sender = request.app.state.email_sender
    if not sender.configured:
        raise HTTPException(status_code=503, detail="Email delivery is not configured")

    recipients = [str(r) for r in (payload.recipients if payload and payload.recipients else [])]
    recipients = recipients or settings.RATE_LIMIT_REPORT_RECIPIENTS
    if not recipients:
        raise HTTPException(status_code=422, detail="No report recipients configured")

    delivery = send_hourly_rate_limit_report(db, sender, recipients)
    return {
        "skipped": delivery.skipped,
        "sent": delivery.sent,
        "failed": delivery.failed,
        "subject": delivery.subject,
    }
