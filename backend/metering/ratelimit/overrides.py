import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from metering.core.clock import utcnow
from metering.ratelimit.models import RateLimitOverride

logger = logging.getLogger(__name__)

TARGET_TYPES = ("api_key", "ip")


@dataclass(frozen=True)
class OverrideLimits:
    override_id: str
    max_per_minute: int
    max_per_day: int
    expires_at: datetime | None


@dataclass
class _Entry:
    expires_at: float
    value: OverrideLimits | None


class OverrideCache:
    """TTL cache of override lookups, including negative results."""

    def __init__(
        self,
        *,
        ttl_s: int = 60,
        max_items: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = max(1, int(ttl_s or 1))
        self._max_items = max(1, int(max_items or 1))
        self._clock = clock
        self._items: dict[tuple[str, str], _Entry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def lookup(self, key: tuple[str, str]) -> tuple[bool, OverrideLimits | None]:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return False, None
            if entry.expires_at <= self._clock():
                self._items.pop(key, None)
                return False, None
            return True, entry.value

    def set(self, key: tuple[str, str], value: OverrideLimits | None) -> None:
        with self._lock:
            self._evict_if_needed()
            self._items[key] = _Entry(expires_at=self._clock() + self._ttl_s, value=value)

    def invalidate(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._items.pop(key, None)

    def _evict_if_needed(self) -> None:
        # caller holds self._lock
        if len(self._items) < self._max_items:
            return
        now = self._clock()
        for k, entry in list(self._items.items()):
            if entry.expires_at <= now:
                self._items.pop(k, None)
        while len(self._items) >= self._max_items and self._items:
            self._items.pop(next(iter(self._items)), None)


def _to_limits(row: RateLimitOverride) -> OverrideLimits:
    return OverrideLimits(
        override_id=row.id,
        max_per_minute=int(row.max_per_minute),
        max_per_day=int(row.max_per_day),
        expires_at=row.expires_at,
    )


def find_active_override(
    db: Session,
    target_type: str,
    target_id: str,
    now: datetime | None = None,
) -> RateLimitOverride | None:
    now = now or utcnow()
    return db.execute(
        select(RateLimitOverride)
        .where(
            RateLimitOverride.target_type == target_type,
            RateLimitOverride.target_id == target_id,
            RateLimitOverride.is_active.is_(True),
            or_(RateLimitOverride.expires_at.is_(None), RateLimitOverride.expires_at > now),
        )
        .order_by(RateLimitOverride.created_at.desc())
        .limit(1)
    ).scalars().first()


def resolve_override(
    db: Session,
    cache: OverrideCache,
    target_type: str,
    target_id: str,
    now: datetime | None = None,
) -> OverrideLimits | None:
    """Cached override lookup. Lookup failures fall back to tier defaults."""
    now = now or utcnow()
    key = (target_type, target_id)

    try:
        hit, value = cache.lookup(key)
        if not hit:
            row = find_active_override(db, target_type, target_id, now=now)
            value = _to_limits(row) if row else None
            cache.set(key, value)

        if value is not None and value.expires_at is not None and value.expires_at <= now:
            cache.invalidate(key)
            return None
    except Exception:
        logger.exception("Rate limit override lookup failed for %s:%s", target_type, target_id)
        db.rollback()
        return None
    return value


def get_active_overrides(db: Session) -> list[RateLimitOverride]:
    return list(
        db.execute(
            select(RateLimitOverride)
            .where(RateLimitOverride.is_active.is_(True))
            .order_by(RateLimitOverride.created_at.desc())
        ).scalars().all()
    )


def create_override(
    db: Session,
    *,
    target_type: str,
    target_id: str,
    max_per_minute: int,
    max_per_day: int,
    created_by: str,
    reason: str | None = None,
    expires_at: datetime | None = None,
    cache: OverrideCache | None = None,
) -> RateLimitOverride:
    if target_type not in TARGET_TYPES:
        raise ValueError(f"Unknown override target type: {target_type}")

    now = utcnow()
    row = RateLimitOverride(
        id=f"rlo_{secrets.token_hex(12)}",
        target_type=target_type,
        target_id=target_id,
        max_per_minute=max_per_minute,
        max_per_day=max_per_day,
        reason=reason,
        created_by=created_by,
        expires_at=expires_at,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)

    if cache is not None:
        cache.invalidate((target_type, target_id))
    logger.info("Rate limit override %s created for %s:%s by %s", row.id, target_type, target_id, created_by)
    return row


def deactivate_override(db: Session, override_id: str, cache: OverrideCache | None = None) -> bool:
    row = db.get(RateLimitOverride, override_id)
    if row is None:
        return False

    row.is_active = False
    row.updated_at = utcnow()
    db.commit()

    if cache is not None:
        cache.invalidate((row.target_type, row.target_id))
    return True
