import os
import threading

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker

from metering.db.base import Base
from metering.tokens.models import TokenTransaction, TokenWallet
from metering.tokens.service import (
    BalanceAdjustmentError,
    FeatureNotPriced,
    InsufficientTokens,
    admin_adjust_balance,
    credit_tokens,
    debit_tokens,
    get_balance,
    get_transaction_history,
    get_wallet,
    set_feature_pricing,
    spend_for_feature,
    verify_ledger,
)


def _credit(db, user_id, amount, key=None):
    return credit_tokens(
        db,
        user_id=user_id,
        amount=amount,
        source="purchase",
        description=f"Bought {amount} tokens",
        idempotency_key=key,
    )


def test_credit_creates_wallet_and_ledger_row(db):
    txn = _credit(db, "u1", 100)

    wallet = get_wallet(db, "u1")
    assert wallet.balance == 100
    assert wallet.total_earned == 100
    assert wallet.total_spent == 0
    assert txn.type == "credit"
    assert txn.amount == 100
    assert txn.balance_after == 100


def test_credit_replay_with_same_idempotency_key_is_a_no_op(db):
    first = _credit(db, "u1", 100, key="cs_test_123")
    second = _credit(db, "u1", 100, key="cs_test_123")

    assert second.id == first.id
    assert get_balance(db, "u1") == 100
    assert len(get_transaction_history(db, "u1")) == 1


def test_credit_rejects_non_positive_amount(db):
    with pytest.raises(ValueError):
        _credit(db, "u1", 0)


def test_debit_without_wallet_reports_zero_available(db):
    result = debit_tokens(db, user_id="u_none", amount=5, feature_code="gtmetrix_scan", description="scan")

    assert result == InsufficientTokens(required=5, available=0)
    assert get_wallet(db, "u_none") is None


def test_debit_short_balance_leaves_ledger_untouched(db):
    _credit(db, "u1", 3)

    result = debit_tokens(db, user_id="u1", amount=5, feature_code="gtmetrix_scan", description="scan")

    assert isinstance(result, InsufficientTokens)
    assert result.available == 3
    assert "Required: 5" in result.error
    assert get_balance(db, "u1") == 3
    assert len(get_transaction_history(db, "u1")) == 1


def test_debit_writes_negative_amount_sourced_from_feature(db):
    _credit(db, "u1", 10)

    txn = debit_tokens(
        db,
        user_id="u1",
        amount=4,
        feature_code="ai_readiness",
        description="AI readiness report",
        reference_id="scan_1",
    )

    assert txn.type == "debit"
    assert txn.amount == -4
    assert txn.source == "ai_readiness"
    assert txn.balance_after == 6
    wallet = get_wallet(db, "u1")
    assert wallet.total_spent == 4
    assert wallet.balance == wallet.total_earned - wallet.total_spent


def test_admin_adjust_below_zero_raises_and_rolls_back(db):
    _credit(db, "u1", 5)

    with pytest.raises(BalanceAdjustmentError):
        admin_adjust_balance(db, user_id="u1", amount=-6, description="chargeback", admin_id="u_admin")

    assert get_balance(db, "u1") == 5
    assert len(get_transaction_history(db, "u1")) == 1


def test_admin_adjust_negative_counts_as_spent(db):
    _credit(db, "u1", 10)

    txn = admin_adjust_balance(db, user_id="u1", amount=-4, description="refund clawback", admin_id="u_admin")

    assert txn.type == "adjustment"
    assert txn.reference_id == "u_admin"
    assert txn.metadata_json == {"adjusted_by": "u_admin"}
    wallet = get_wallet(db, "u1")
    assert (wallet.balance, wallet.total_earned, wallet.total_spent) == (6, 10, 4)


def test_ledger_replay_matches_wallet_after_mixed_operations(db):
    _credit(db, "u1", 50, key="k1")
    _credit(db, "u1", 50, key="k1")
    debit_tokens(db, user_id="u1", amount=20, feature_code="gtmetrix_scan", description="scan")
    debit_tokens(db, user_id="u1", amount=500, feature_code="gtmetrix_scan", description="too big")
    admin_adjust_balance(db, user_id="u1", amount=7, description="goodwill", admin_id="u_admin")
    _credit(db, "u1", 13)

    check = verify_ledger(db, "u1")

    assert check.ok is True, check.problems
    assert check.transactions == 4
    assert check.balance == 50


def test_verify_ledger_flags_tampered_wallet(db):
    _credit(db, "u1", 10)
    wallet = get_wallet(db, "u1")
    wallet.balance = 99
    db.commit()

    check = verify_ledger(db, "u1")

    assert check.ok is False
    assert any("ledger total" in p for p in check.problems)


def test_history_is_newest_first(db):
    _credit(db, "u1", 1)
    _credit(db, "u1", 2)

    history = get_transaction_history(db, "u1")

    assert [t.amount for t in history] == [2, 1]


def test_spend_for_feature_uses_pricing_table(db):
    set_feature_pricing(db, feature_code="gtmetrix_scan", feature_name="GTmetrix scan", tokens_required=3)
    _credit(db, "u1", 5)

    txn = spend_for_feature(db, user_id="u1", feature_code="gtmetrix_scan")
    short = spend_for_feature(db, user_id="u1", feature_code="gtmetrix_scan")
    unknown = spend_for_feature(db, user_id="u1", feature_code="nope")

    assert txn.amount == -3
    assert short == InsufficientTokens(required=3, available=2)
    assert unknown == FeatureNotPriced(feature_code="nope")


def test_wallet_lock_uses_select_for_update():
    stmt = select(TokenWallet).where(TokenWallet.user_id == "u1").with_for_update()

    assert "FOR UPDATE" in str(stmt.compile(dialect=postgresql.dialect()))


@pytest.mark.skipif(
    not os.getenv("METERING_TEST_POSTGRES_URL"),
    reason="row-lock contention needs PostgreSQL (METERING_TEST_POSTGRES_URL)",
)
def test_concurrent_debits_never_overspend():
    engine = create_engine(os.environ["METERING_TEST_POSTGRES_URL"])
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    user_id = f"u_contention_{os.getpid()}"

    with factory() as session:
        _credit(session, user_id, 10)

    results = []
    lock = threading.Lock()

    def worker():
        with factory() as session:
            result = debit_tokens(session, user_id=user_id, amount=1, feature_code="scan", description="race")
            with lock:
                results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(25)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    with factory() as session:
        successes = [r for r in results if isinstance(r, TokenTransaction)]
        assert len(successes) == 10
        assert get_balance(session, user_id) == 0
        assert verify_ledger(session, user_id).ok is True
        session.query(TokenTransaction).filter(TokenTransaction.user_id == user_id).delete()
        session.query(TokenWallet).filter(TokenWallet.user_id == user_id).delete()
        session.commit()
    engine.dispose()
