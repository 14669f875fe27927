import logging
import secrets
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from metering.apikeys.deps import ApiKeyContext
from metering.db.session import get_db
from metering.grader.schemas import ScanAccepted, ScanRequest
from metering.quota.service import (
    SCAN_BASIC,
    SCAN_GTMETRIX,
    consume_api_call,
    consume_scan,
    get_user_quota_with_tier,
)
from metering.ratelimit.deps import api_rate_limit, optional_api_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()

_LIMIT_MESSAGES = {
    "daily_limit_reached": "Daily scan limit reached for your tier",
    "monthly_limit_reached": "Monthly scan limit reached for your tier",
}


@router.post("/scan", response_model=ScanAccepted, status_code=202)
def scan(
    payload: ScanRequest,
    request: Request,
    db: Session = Depends(get_db),
    ctx: ApiKeyContext = Depends(optional_api_rate_limit),
):
    started = time.perf_counter()
    scan_id = f"scan_{secrets.token_hex(12)}"

    if not ctx.authenticated:
        if payload.scan_type != SCAN_BASIC:
            raise HTTPException(
                status_code=403,
                detail={
                    "error": "feature_not_allowed",
                    "message": "GTmetrix scans require an API key on a tier that includes them",
                    "tier": ctx.tier,
                },
            )
        return {
            "scan_id": scan_id,
            "status": "queued",
            "url": str(payload.url),
            "scan_type": payload.scan_type,
            "tier": ctx.tier,
            "cost": 0,
        }

    outcome = consume_scan(db, ctx.user_id, payload.scan_type)
    if not outcome.allowed:
        if outcome.reason == "feature_not_allowed":
            raise HTTPException(
                status_code=403,
                detail={
                    "error": outcome.reason,
                    "message": f"{payload.scan_type} scans are not included in the {outcome.tier} tier",
                    "tier": outcome.tier,
                },
            )
        raise HTTPException(
            status_code=429,
            detail={
                "error": outcome.reason,
                "message": _LIMIT_MESSAGES.get(outcome.reason, "Scan limit reached"),
                "tier": outcome.tier,
                "daily_remaining": outcome.daily_remaining,
                "monthly_remaining": outcome.monthly_remaining,
            },
        )

    call = consume_api_call(
        db,
        user_id=ctx.user_id,
        api_key_id=ctx.api_key_id,
        endpoint=request.url.path,
        method=request.method,
        status_code=202,
        response_time_ms=int((time.perf_counter() - started) * 1000),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        metadata={"scan_id": scan_id, "scan_type": payload.scan_type, "cost": outcome.cost},
    )
    if payload.scan_type == SCAN_GTMETRIX:
        logger.info("GTmetrix scan %s queued for user %s", scan_id, ctx.user_id)

    return {
        "scan_id": scan_id,
        "status": "queued",
        "url": str(payload.url),
        "scan_type": payload.scan_type,
        "tier": outcome.tier,
        "cost": outcome.cost,
        "daily_remaining": outcome.daily_remaining,
        "monthly_remaining": outcome.monthly_remaining,
        "calls_remaining": call.remaining,
    }


@router.get("/quota")
def key_quota(
    db: Session = Depends(get_db),
    ctx: ApiKeyContext = Depends(api_rate_limit),
):
    quota = get_user_quota_with_tier(db, ctx.user_id)
    return {
        "tier": quota["tier"]["name"],
        "daily_remaining": quota["daily_remaining"],
        "monthly_remaining": quota["monthly_remaining"],
        "calls_remaining": quota["total_calls"] - quota["used_calls"],
    }
