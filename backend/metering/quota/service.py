import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from metering.core.clock import utcnow
from metering.quota.models import ApiCallPack, ApiQuota, ApiTier, ApiUsageLog
from metering.quota.packs import CallPackQueue

logger = logging.getLogger(__name__)

SCAN_BASIC = "basic"
SCAN_GTMETRIX = "gtmetrix"
SCAN_TYPES = (SCAN_BASIC, SCAN_GTMETRIX)

CHARGED_SUBSCRIPTION = "subscription"
CHARGED_PACK = "pack"
CHARGED_OVERDRAFT = "overdraft"

DEFAULT_TIER_NAME = "free"

DEFAULT_TIERS: list[dict[str, Any]] = [
    {
        "id": "tier_free",
        "name": "free",
        "daily_limit": 5,
        "monthly_limit": 100,
        "gtmetrix_enabled": False,
        "gtmetrix_cost": 5,
        "basic_scan_cost": 1,
        "price_monthly_cents": 0,
        "description": "Basic scans only",
        "sort_order": 0,
    },
    {
        "id": "tier_starter",
        "name": "starter",
        "daily_limit": 30,
        "monthly_limit": 1000,
        "gtmetrix_enabled": True,
        "gtmetrix_cost": 3,
        "basic_scan_cost": 1,
        "price_monthly_cents": 1900,
        "description": "Small sites and agencies getting started",
        "sort_order": 1,
    },
    {
        "id": "tier_pro",
        "name": "pro",
        "daily_limit": 60,
        "monthly_limit": 5000,
        "gtmetrix_enabled": True,
        "gtmetrix_cost": 2,
        "basic_scan_cost": 1,
        "price_monthly_cents": 4900,
        "description": "Daily monitoring with GTmetrix",
        "sort_order": 2,
    },
    {
        "id": "tier_enterprise",
        "name": "enterprise",
        "daily_limit": 300,
        "monthly_limit": 100000,
        "gtmetrix_enabled": True,
        "gtmetrix_cost": 1,
        "basic_scan_cost": 1,
        "price_monthly_cents": 19900,
        "description": "High volume and custom limits",
        "sort_order": 3,
    },
]


@dataclass(frozen=True)
class ScanOutcome:
    allowed: bool
    reason: str | None
    tier: str
    cost: int
    daily_remaining: int
    monthly_remaining: int


@dataclass(frozen=True)
class ApiCallOutcome:
    success: bool
    remaining: int
    charged_to: str
    pack_id: str | None = None


@dataclass(frozen=True)
class TierChange:
    ok: bool
    reason: str | None = None
    tier: str | None = None
    subscription_calls: int | None = None
    total_calls: int | None = None


def _new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


# --- Tiers ---

def ensure_default_tiers(db: Session) -> int:
    existing = set(db.execute(select(ApiTier.name)).scalars().all())
    created = 0
    for values in DEFAULT_TIERS:
        if values["name"] in existing:
            continue
        db.add(ApiTier(**values))
        created += 1
    if created:
        db.commit()
    return created


def list_tiers(db: Session) -> list[ApiTier]:
    return list(db.execute(select(ApiTier).order_by(ApiTier.sort_order.asc())).scalars().all())


def get_tier_by_name(db: Session, name: str) -> ApiTier | None:
    return db.execute(select(ApiTier).where(ApiTier.name == name)).scalar_one_or_none()


def _resolve_tier(db: Session, quota: ApiQuota) -> ApiTier:
    tier = db.get(ApiTier, quota.tier_id) if quota.tier_id else None
    if tier is None:
        tier = get_tier_by_name(db, DEFAULT_TIER_NAME)
    if tier is None:
        raise LookupError(f"Default tier '{DEFAULT_TIER_NAME}' is not configured")
    return tier


# --- Quota rows ---

def get_or_create_quota(db: Session, user_id: str) -> ApiQuota:
    row = db.execute(select(ApiQuota).where(ApiQuota.user_id == user_id)).scalar_one_or_none()
    if row:
        return row

    now = utcnow()
    row = ApiQuota(
        id=_new_id("q"),
        user_id=user_id,
        total_calls=0,
        used_calls=0,
        subscription_calls=0,
        pack_calls=0,
        daily_used=0,
        monthly_used=0,
        last_daily_reset=now,
        last_monthly_reset=now,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race on the unique user_id; the other writer's row wins.
        db.rollback()
        return db.execute(select(ApiQuota).where(ApiQuota.user_id == user_id)).scalar_one()
    db.refresh(row)
    return row


def _lock_quota(db: Session, user_id: str) -> ApiQuota:
    get_or_create_quota(db, user_id)
    return db.execute(
        select(ApiQuota)
        .where(ApiQuota.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def _apply_resets(quota: ApiQuota, now: datetime) -> bool:
    changed = False

    last_daily = quota.last_daily_reset
    if last_daily is None or last_daily.date() != now.date():
        quota.daily_used = 0
        quota.last_daily_reset = now
        changed = True

    last_monthly = quota.last_monthly_reset
    if last_monthly is None or (last_monthly.year, last_monthly.month) != (now.year, now.month):
        quota.monthly_used = 0
        quota.used_calls = 0
        quota.last_monthly_reset = now
        changed = True

    if changed:
        quota.updated_at = now
    return changed


def check_and_reset_quotas(db: Session, user_id: str, now: datetime | None = None) -> ApiQuota:
    now = now or utcnow()
    try:
        quota = _lock_quota(db, user_id)
        _apply_resets(quota, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return quota


# --- Metering ---

def consume_scan(
    db: Session,
    user_id: str,
    scan_type: str = SCAN_BASIC,
    now: datetime | None = None,
) -> ScanOutcome:
    if scan_type not in SCAN_TYPES:
        raise ValueError(f"Unknown scan type: {scan_type}")

    now = now or utcnow()
    try:
        quota = _lock_quota(db, user_id)
        _apply_resets(quota, now)
        tier = _resolve_tier(db, quota)
        cost = tier.gtmetrix_cost if scan_type == SCAN_GTMETRIX else tier.basic_scan_cost

        reason = None
        if scan_type == SCAN_GTMETRIX and not tier.gtmetrix_enabled:
            reason = "feature_not_allowed"
        elif quota.daily_used + cost > tier.daily_limit:
            reason = "daily_limit_reached"
        elif quota.monthly_used + cost > tier.monthly_limit:
            reason = "monthly_limit_reached"
        else:
            quota.daily_used += cost
            quota.monthly_used += cost
            quota.used_calls += cost
            quota.updated_at = now

        outcome = ScanOutcome(
            allowed=reason is None,
            reason=reason,
            tier=tier.name,
            cost=cost,
            daily_remaining=max(0, tier.daily_limit - quota.daily_used),
            monthly_remaining=max(0, tier.monthly_limit - quota.monthly_used),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not outcome.allowed:
        logger.info("Scan refused user=%s type=%s reason=%s", user_id, scan_type, outcome.reason)
    return outcome


def consume_api_call(
    db: Session,
    *,
    user_id: str,
    api_key_id: str | None,
    endpoint: str,
    method: str,
    status_code: int,
    response_time_ms: int | None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> ApiCallOutcome:
    """Charge one call. Never refuses: the balance may go negative."""
    now = now or utcnow()
    try:
        quota = _lock_quota(db, user_id)
        _apply_resets(quota, now)

        remaining = quota.total_calls - quota.used_calls
        charged_to = CHARGED_SUBSCRIPTION
        pack_id = None

        if quota.subscription_calls - quota.used_calls <= 0:
            packs = db.execute(
                select(ApiCallPack)
                .where(ApiCallPack.user_id == user_id, ApiCallPack.calls_remaining > 0)
                .with_for_update()
            ).scalars().all()
            pack = CallPackQueue(packs).draw()
            if pack is not None:
                charged_to = CHARGED_PACK
                pack_id = pack.id
                quota.pack_calls = max(0, quota.pack_calls - 1)
            else:
                charged_to = CHARGED_OVERDRAFT

        quota.used_calls += 1
        quota.updated_at = now

        db.add(
            ApiUsageLog(
                id=_new_id("aul"),
                user_id=user_id,
                api_key_id=api_key_id,
                endpoint=endpoint,
                method=method,
                status_code=status_code,
                response_time_ms=response_time_ms,
                ip_address=ip_address,
                user_agent=user_agent[:512] if user_agent else None,
                metadata_json=metadata or None,
                called_at=now,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return ApiCallOutcome(success=True, remaining=remaining - 1, charged_to=charged_to, pack_id=pack_id)


# --- Top-ups and tier changes ---

def add_subscription_calls(
    db: Session,
    user_id: str,
    calls: int,
    reset_at: datetime | None = None,
) -> ApiQuota:
    try:
        quota = _lock_quota(db, user_id)
        quota.subscription_calls += calls
        quota.total_calls += calls
        quota.reset_at = reset_at
        quota.updated_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    return quota


def add_pack_calls(
    db: Session,
    user_id: str,
    calls: int,
    stripe_session_id: str | None = None,
    now: datetime | None = None,
) -> ApiCallPack:
    if calls <= 0:
        raise ValueError("Pack size must be positive")

    now = now or utcnow()
    try:
        quota = _lock_quota(db, user_id)
        pack = ApiCallPack(
            id=_new_id("cp"),
            user_id=user_id,
            pack_size=calls,
            calls_remaining=calls,
            stripe_session_id=stripe_session_id,
            purchased_at=now,
        )
        db.add(pack)
        quota.pack_calls += calls
        quota.total_calls += calls
        quota.updated_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(pack)
    return pack


def set_user_tier(db: Session, user_id: str, tier_name: str) -> TierChange:
    tier = get_tier_by_name(db, tier_name)
    if tier is None:
        return TierChange(ok=False, reason="tier_not_found")

    try:
        quota = _lock_quota(db, user_id)
        quota.tier_id = tier.id
        quota.subscription_calls = tier.monthly_limit
        quota.total_calls = tier.monthly_limit
        quota.updated_at = utcnow()
        change = TierChange(
            ok=True,
            tier=tier.name,
            subscription_calls=quota.subscription_calls,
            total_calls=quota.total_calls,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("User %s moved to tier %s", user_id, tier.name)
    return change


# --- Reads ---

def tier_to_dict(tier: ApiTier) -> dict:
    return {
        "id": tier.id,
        "name": tier.name,
        "daily_limit": tier.daily_limit,
        "monthly_limit": tier.monthly_limit,
        "gtmetrix_enabled": bool(tier.gtmetrix_enabled),
        "gtmetrix_cost": tier.gtmetrix_cost,
        "basic_scan_cost": tier.basic_scan_cost,
        "price_monthly_cents": tier.price_monthly_cents,
    }


def _quota_to_dict(quota: ApiQuota) -> dict:
    return {
        "user_id": quota.user_id,
        "total_calls": quota.total_calls,
        "used_calls": quota.used_calls,
        "subscription_calls": quota.subscription_calls,
        "pack_calls": quota.pack_calls,
        "daily_used": quota.daily_used,
        "monthly_used": quota.monthly_used,
        "last_daily_reset": quota.last_daily_reset,
        "last_monthly_reset": quota.last_monthly_reset,
        "reset_at": quota.reset_at,
        "remaining": max(0, quota.total_calls - quota.used_calls),
    }


def get_user_quota(db: Session, user_id: str) -> dict:
    return _quota_to_dict(get_or_create_quota(db, user_id))


def get_user_tier(db: Session, user_id: str) -> ApiTier:
    return _resolve_tier(db, get_or_create_quota(db, user_id))


def get_user_quota_with_tier(db: Session, user_id: str, now: datetime | None = None) -> dict:
    quota = check_and_reset_quotas(db, user_id, now=now)
    tier = _resolve_tier(db, quota)
    return {
        **_quota_to_dict(quota),
        "tier": tier_to_dict(tier),
        "daily_remaining": max(0, tier.daily_limit - quota.daily_used),
        "monthly_remaining": max(0, tier.monthly_limit - quota.monthly_used),
    }


def get_usage_stats(db: Session, user_id: str, days: int = 30, now: datetime | None = None) -> list[dict]:
    since = (now or utcnow()) - timedelta(days=max(1, int(days)))
    day = func.date(ApiUsageLog.called_at)

    rows = db.execute(
        select(day, func.count(ApiUsageLog.id), func.avg(ApiUsageLog.response_time_ms))
        .where(ApiUsageLog.user_id == user_id, ApiUsageLog.called_at >= since)
        .group_by(day)
        .order_by(desc(day))
    ).all()

    return [
        {
            "date": str(d),
            "calls": int(n or 0),
            "avg_response_time_ms": float(avg) if avg is not None else None,
        }
        for d, n, avg in rows
    ]


def get_recent_usage(db: Session, user_id: str, limit: int = 50) -> list[ApiUsageLog]:
    return list(
        db.execute(
            select(ApiUsageLog)
            .where(ApiUsageLog.user_id == user_id)
            .order_by(ApiUsageLog.called_at.desc())
            .limit(limit)
        ).scalars().all()
    )


def get_call_packs(db: Session, user_id: str) -> list[ApiCallPack]:
    return list(
        db.execute(
            select(ApiCallPack)
            .where(ApiCallPack.user_id == user_id)
            .order_by(ApiCallPack.purchased_at.desc())
        ).scalars().all()
    )
