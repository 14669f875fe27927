import os
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker

from metering.db.base import Base
from metering.quota.models import ApiCallPack, ApiQuota, ApiUsageLog
from metering.quota.service import (
    CHARGED_OVERDRAFT,
    CHARGED_PACK,
    CHARGED_SUBSCRIPTION,
    add_pack_calls,
    add_subscription_calls,
    check_and_reset_quotas,
    consume_api_call,
    consume_scan,
    ensure_default_tiers,
    get_call_packs,
    get_or_create_quota,
    get_recent_usage,
    get_usage_stats,
    get_user_quota_with_tier,
    get_user_tier,
    set_user_tier,
)


def _set_usage(db, user_id, *, now, daily_used=None, monthly_used=None):
    quota = check_and_reset_quotas(db, user_id, now=now)
    if daily_used is not None:
        quota.daily_used = daily_used
    if monthly_used is not None:
        quota.monthly_used = monthly_used
    db.commit()


def _charge(db, user_id):
    return consume_api_call(
        db,
        user_id=user_id,
        api_key_id="ak_test",
        endpoint="/api/v1/grader/scan",
        method="POST",
        status_code=202,
        response_time_ms=12,
    )


def test_new_user_gets_zeroed_quota_on_free_tier(db):
    quota = get_or_create_quota(db, "u_new")

    assert quota.total_calls == 0
    assert quota.used_calls == 0
    assert quota.daily_used == 0
    assert get_user_tier(db, "u_new").name == "free"
    assert get_or_create_quota(db, "u_new").id == quota.id


def test_free_tier_allows_five_basic_scans_per_day(db, day):
    results = [consume_scan(db, "u_free", "basic", now=day) for _ in range(6)]

    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert results[-1].reason == "daily_limit_reached"
    assert results[4].daily_remaining == 0
    assert results[4].monthly_remaining == 95


def test_gtmetrix_refused_for_free_tier_without_mutation(db, day):
    consume_scan(db, "u_free", "basic", now=day)

    outcome = consume_scan(db, "u_free", "gtmetrix", now=day)

    assert outcome.allowed is False
    assert outcome.reason == "feature_not_allowed"
    quota = db.execute(select(ApiQuota).where(ApiQuota.user_id == "u_free")).scalar_one()
    db.refresh(quota)
    assert quota.daily_used == 1
    assert quota.monthly_used == 1


def test_gtmetrix_scan_charges_tier_cost(db, day):
    set_user_tier(db, "u_starter", "starter")

    outcome = consume_scan(db, "u_starter", "gtmetrix", now=day)

    assert outcome.allowed is True
    assert outcome.cost == 3
    assert outcome.daily_remaining == 27
    assert outcome.monthly_remaining == 997


def test_pro_user_at_59_gets_last_scan_then_daily_limit(db, day):
    set_user_tier(db, "u_pro", "pro")
    _set_usage(db, "u_pro", now=day, daily_used=59, monthly_used=100)

    first = consume_scan(db, "u_pro", "basic", now=day)
    second = consume_scan(db, "u_pro", "basic", now=day)

    assert first.allowed is True
    assert first.daily_remaining == 0
    assert first.monthly_remaining == 4899
    assert second.allowed is False
    assert second.reason == "daily_limit_reached"


def test_monthly_limit_reached_when_daily_budget_remains(db, day):
    _set_usage(db, "u_month", now=day, daily_used=0, monthly_used=100)

    outcome = consume_scan(db, "u_month", "basic", now=day)

    assert outcome.allowed is False
    assert outcome.reason == "monthly_limit_reached"


def test_new_day_resets_daily_counter_only(db, day):
    for _ in range(5):
        consume_scan(db, "u_free", "basic", now=day)

    outcome = consume_scan(db, "u_free", "basic", now=day + timedelta(days=1))

    assert outcome.allowed is True
    assert outcome.daily_remaining == 4
    assert outcome.monthly_remaining == 94


def test_new_month_resets_monthly_and_used_calls(db, day):
    consume_scan(db, "u_free", "basic", now=day)
    _charge(db, "u_free")

    quota = check_and_reset_quotas(db, "u_free", now=datetime(2026, 4, 1, 0, 0, 1))

    assert quota.daily_used == 0
    assert quota.monthly_used == 0
    assert quota.used_calls == 0
    assert quota.last_monthly_reset == datetime(2026, 4, 1, 0, 0, 1)


def test_unknown_scan_type_is_rejected(db):
    with pytest.raises(ValueError):
        consume_scan(db, "u_free", "lighthouse")


def test_api_call_charges_subscription_first(db):
    set_user_tier(db, "u_sub", "pro")
    add_pack_calls(db, "u_sub", 10)

    outcome = _charge(db, "u_sub")

    assert outcome.success is True
    assert outcome.charged_to == CHARGED_SUBSCRIPTION
    assert outcome.remaining == 5009
    assert get_call_packs(db, "u_sub")[0].calls_remaining == 10


def test_api_call_drains_packs_oldest_first_then_overdraws(db):
    t0 = datetime(2026, 2, 1, 8, 0, 0)
    older = add_pack_calls(db, "u_packs", 3, now=t0)
    newer = add_pack_calls(db, "u_packs", 2, now=t0 + timedelta(hours=1))

    outcomes = [_charge(db, "u_packs") for _ in range(6)]

    assert [o.pack_id for o in outcomes[:5]] == [older.id] * 3 + [newer.id] * 2
    assert [o.remaining for o in outcomes] == [4, 3, 2, 1, 0, -1]
    assert {o.charged_to for o in outcomes[:5]} == {CHARGED_PACK}
    assert outcomes[-1].charged_to == CHARGED_OVERDRAFT
    assert outcomes[-1].success is True
    assert all(p.calls_remaining == 0 for p in get_call_packs(db, "u_packs"))
    assert len(get_recent_usage(db, "u_packs")) == 6


def test_add_pack_rejects_non_positive_size(db):
    with pytest.raises(ValueError):
        add_pack_calls(db, "u_packs", 0)


def test_set_tier_overwrites_subscription_allotment(db):
    add_subscription_calls(db, "u_tier", 50)
    add_pack_calls(db, "u_tier", 20)

    change = set_user_tier(db, "u_tier", "enterprise")

    assert change.ok is True
    assert change.tier == "enterprise"
    assert change.subscription_calls == 100000
    assert change.total_calls == 100000


def test_set_unknown_tier_returns_rejection(db):
    change = set_user_tier(db, "u_tier", "platinum")

    assert change.ok is False
    assert change.reason == "tier_not_found"
    assert get_user_tier(db, "u_tier").name == "free"


def test_dashboard_view_includes_tier_and_remaining(db):
    view = get_user_quota_with_tier(db, "u_dash")

    assert view["tier"]["name"] == "free"
    assert view["daily_remaining"] == 5
    assert view["monthly_remaining"] == 100
    assert view["remaining"] == 0


def test_usage_stats_groups_calls_by_day(db):
    for _ in range(3):
        _charge(db, "u_stats")

    stats = get_usage_stats(db, "u_stats", days=7)

    assert len(stats) == 1
    assert stats[0]["calls"] == 3
    assert stats[0]["avg_response_time_ms"] == pytest.approx(12.0)


def test_quota_lock_uses_select_for_update():
    stmt = select(ApiQuota).where(ApiQuota.user_id == "u1").with_for_update()

    compiled = str(stmt.compile(dialect=postgresql.dialect()))

    assert "FOR UPDATE" in compiled


POSTGRES_URL = os.getenv("METERING_TEST_POSTGRES_URL")
needs_postgres = pytest.mark.skipif(
    not POSTGRES_URL,
    reason="row-lock contention needs PostgreSQL (METERING_TEST_POSTGRES_URL)",
)


@pytest.fixture
def pg_factory():
    engine = create_engine(POSTGRES_URL)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    with factory() as session:
        ensure_default_tiers(session)
    yield factory
    engine.dispose()


def _run_in_threads(factory, n, fn):
    results = []
    lock = threading.Lock()

    def worker():
        with factory() as session:
            result = fn(session)
            with lock:
                results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def _cleanup(session, user_id):
    session.execute(delete(ApiUsageLog).where(ApiUsageLog.user_id == user_id))
    session.execute(delete(ApiCallPack).where(ApiCallPack.user_id == user_id))
    session.execute(delete(ApiQuota).where(ApiQuota.user_id == user_id))
    session.commit()


@needs_postgres
def test_concurrent_scans_never_exceed_daily_limit(pg_factory):
    user_id = f"u_scan_race_{os.getpid()}"
    with pg_factory() as session:
        get_or_create_quota(session, user_id)

    results = _run_in_threads(pg_factory, 20, lambda s: consume_scan(s, user_id, "basic"))

    with pg_factory() as session:
        quota = session.execute(select(ApiQuota).where(ApiQuota.user_id == user_id)).scalar_one()
        assert sum(1 for r in results if r.allowed) == 5
        assert {r.reason for r in results if not r.allowed} == {"daily_limit_reached"}
        assert quota.daily_used == 5
        assert quota.monthly_used == 5
        assert quota.used_calls == 5
        _cleanup(session, user_id)


@needs_postgres
def test_concurrent_api_calls_charge_each_call_exactly_once(pg_factory):
    user_id = f"u_call_race_{os.getpid()}"
    t0 = datetime(2026, 2, 1, 8, 0, 0)
    with pg_factory() as session:
        add_pack_calls(session, user_id, 10, now=t0)
        add_pack_calls(session, user_id, 5, now=t0 + timedelta(hours=1))

    results = _run_in_threads(
        pg_factory,
        25,
        lambda s: consume_api_call(
            s,
            user_id=user_id,
            api_key_id="ak_race",
            endpoint="/api/v1/grader/scan",
            method="POST",
            status_code=202,
            response_time_ms=5,
        ),
    )

    with pg_factory() as session:
        quota = session.execute(select(ApiQuota).where(ApiQuota.user_id == user_id)).scalar_one()
        packs = session.execute(select(ApiCallPack).where(ApiCallPack.user_id == user_id)).scalars().all()
        logged = session.execute(
            select(func.count()).select_from(ApiUsageLog).where(ApiUsageLog.user_id == user_id)
        ).scalar_one()

        charged_to_packs = sum(1 for r in results if r.charged_to == CHARGED_PACK)
        assert quota.used_calls == 25
        assert charged_to_packs == 15
        assert sum(1 for r in results if r.charged_to == CHARGED_OVERDRAFT) == 10
        assert sum(p.calls_remaining for p in packs) == 15 - charged_to_packs
        assert quota.pack_calls == 0
        assert sorted(r.remaining for r in results) == list(range(-10, 15))
        assert logged == 25
        _cleanup(session, user_id)
