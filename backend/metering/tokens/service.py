"""Token wallet ledger.

Every balance change writes the wallet row and one ledger row in the same
transaction, with the wallet row locked (``SELECT ... FOR UPDATE``) for the
read-modify-write. ``balance_after`` on each ledger row is the running total
in id order, and ``balance == total_earned - total_spent`` holds after every
commit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from metering.core.clock import utcnow
from metering.tokens.models import TokenPricing, TokenTransaction, TokenWallet

logger = logging.getLogger(__name__)


class BalanceAdjustmentError(ValueError):
    pass


@dataclass(frozen=True)
class InsufficientTokens:
    required: int
    available: int

    @property
    def error(self) -> str:
        return f"Insufficient tokens. Required: {self.required}, Available: {self.available}"


@dataclass(frozen=True)
class FeatureNotPriced:
    feature_code: str


@dataclass(frozen=True)
class LedgerCheck:
    ok: bool
    transactions: int
    balance: int
    problems: list[str] = field(default_factory=list)


# --- Wallets ---

def get_wallet(db: Session, user_id: str) -> TokenWallet | None:
    return db.get(TokenWallet, user_id)


def get_or_create_wallet(db: Session, user_id: str) -> TokenWallet:
    wallet = db.get(TokenWallet, user_id)
    if wallet:
        return wallet

    now = utcnow()
    wallet = TokenWallet(
        user_id=user_id,
        balance=0,
        total_earned=0,
        total_spent=0,
        created_at=now,
        updated_at=now,
    )
    db.add(wallet)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.get(TokenWallet, user_id)
    db.refresh(wallet)
    return wallet


def get_balance(db: Session, user_id: str) -> int:
    wallet = get_wallet(db, user_id)
    return wallet.balance if wallet else 0


def _lock_wallet(db: Session, user_id: str) -> TokenWallet | None:
    return db.execute(
        select(TokenWallet)
        .where(TokenWallet.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _find_by_idempotency_key(db: Session, idempotency_key: str) -> TokenTransaction | None:
    return db.execute(
        select(TokenTransaction).where(TokenTransaction.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


# --- Mutations ---

def credit_tokens(
    db: Session,
    *,
    user_id: str,
    amount: int,
    source: str,
    description: str,
    reference_id: str | None = None,
    reference_type: str | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> TokenTransaction:
    if amount <= 0:
        raise ValueError("Credit amount must be positive")

    if idempotency_key:
        existing = _find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            logger.info("Duplicate token credit prevented: %s", idempotency_key)
            return existing

    get_or_create_wallet(db, user_id)
    now = utcnow()
    try:
        wallet = _lock_wallet(db, user_id)
        if idempotency_key:
            existing = _find_by_idempotency_key(db, idempotency_key)
            if existing is not None:
                db.commit()
                logger.info("Duplicate token credit prevented: %s", idempotency_key)
                return existing

        new_balance = wallet.balance + amount
        wallet.balance = new_balance
        wallet.total_earned += amount
        wallet.updated_at = now

        txn = TokenTransaction(
            user_id=user_id,
            type="credit",
            source=source,
            amount=amount,
            balance_after=new_balance,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            idempotency_key=idempotency_key,
            metadata_json=metadata or None,
            created_at=now,
        )
        db.add(txn)
        db.commit()
    except IntegrityError:
        db.rollback()
        # A concurrent credit with the same key committed first.
        if idempotency_key:
            existing = _find_by_idempotency_key(db, idempotency_key)
            if existing is not None:
                return existing
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(txn)
    logger.info("Credited %s tokens to user %s. New balance: %s", amount, user_id, new_balance)
    return txn


def debit_tokens(
    db: Session,
    *,
    user_id: str,
    amount: int,
    feature_code: str,
    description: str,
    reference_id: str | None = None,
    metadata: dict | None = None,
) -> TokenTransaction | InsufficientTokens:
    if amount <= 0:
        raise ValueError("Debit amount must be positive")

    now = utcnow()
    try:
        wallet = _lock_wallet(db, user_id)
        if wallet is None or wallet.balance < amount:
            available = wallet.balance if wallet else 0
            db.rollback()
            return InsufficientTokens(required=amount, available=available)

        new_balance = wallet.balance - amount
        wallet.balance = new_balance
        wallet.total_spent += amount
        wallet.updated_at = now

        txn = TokenTransaction(
            user_id=user_id,
            type="debit",
            source=feature_code,
            amount=-amount,
            balance_after=new_balance,
            description=description,
            reference_id=reference_id,
            reference_type=feature_code,
            metadata_json=metadata or None,
            created_at=now,
        )
        db.add(txn)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(txn)
    logger.info("Debited %s tokens from user %s. New balance: %s", amount, user_id, new_balance)
    return txn


def admin_adjust_balance(
    db: Session,
    *,
    user_id: str,
    amount: int,
    description: str,
    admin_id: str,
) -> TokenTransaction:
    if amount == 0:
        raise ValueError("Adjustment amount must be non-zero")

    get_or_create_wallet(db, user_id)
    now = utcnow()
    try:
        wallet = _lock_wallet(db, user_id)
        new_balance = wallet.balance + amount
        if new_balance < 0:
            raise BalanceAdjustmentError("Cannot adjust balance below zero")

        wallet.balance = new_balance
        if amount > 0:
            wallet.total_earned += amount
        else:
            wallet.total_spent += -amount
        wallet.updated_at = now

        txn = TokenTransaction(
            user_id=user_id,
            type="adjustment",
            source="admin",
            amount=amount,
            balance_after=new_balance,
            description=description,
            reference_id=admin_id,
            reference_type="admin_adjustment",
            metadata_json={"adjusted_by": admin_id},
            created_at=now,
        )
        db.add(txn)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(txn)
    logger.info("Admin %s adjusted user %s balance by %s. New balance: %s", admin_id, user_id, amount, new_balance)
    return txn


# --- Reads ---

def get_transaction_history(db: Session, user_id: str, limit: int = 50) -> list[TokenTransaction]:
    return list(
        db.execute(
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.id.desc())
            .limit(limit)
        ).scalars().all()
    )


def verify_ledger(db: Session, user_id: str) -> LedgerCheck:
    """Replay the ledger in creation order and compare with the wallet."""
    rows = db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id)
        .order_by(TokenTransaction.id.asc())
    ).scalars().all()

    problems: list[str] = []
    running = 0
    for row in rows:
        running += row.amount
        if row.balance_after != running:
            problems.append(f"transaction {row.id}: balance_after={row.balance_after}, replayed={running}")
        if running < 0:
            problems.append(f"transaction {row.id}: negative running balance {running}")

    wallet = get_wallet(db, user_id)
    balance = wallet.balance if wallet else 0
    if balance != running:
        problems.append(f"wallet balance {balance} != ledger total {running}")
    if wallet and wallet.balance != wallet.total_earned - wallet.total_spent:
        problems.append(
            f"wallet balance {wallet.balance} != earned {wallet.total_earned} - spent {wallet.total_spent}"
        )

    return LedgerCheck(ok=not problems, transactions=len(rows), balance=balance, problems=problems)


# --- Feature pricing ---

def get_feature_pricing(db: Session, feature_code: str) -> TokenPricing | None:
    return db.execute(
        select(TokenPricing).where(
            TokenPricing.feature_code == feature_code,
            TokenPricing.is_active.is_(True),
        )
    ).scalar_one_or_none()


def list_feature_pricing(db: Session) -> list[TokenPricing]:
    return list(
        db.execute(
            select(TokenPricing).where(TokenPricing.is_active.is_(True)).order_by(TokenPricing.feature_code)
        ).scalars().all()
    )


def set_feature_pricing(
    db: Session,
    *,
    feature_code: str,
    feature_name: str,
    tokens_required: int,
    description: str | None = None,
) -> TokenPricing:
    row = db.get(TokenPricing, feature_code)
    if row is None:
        row = TokenPricing(feature_code=feature_code)
        db.add(row)
    row.feature_name = feature_name
    row.tokens_required = tokens_required
    row.description = description
    row.is_active = True
    row.updated_at = utcnow()
    db.commit()
    db.refresh(row)
    return row


def spend_for_feature(
    db: Session,
    *,
    user_id: str,
    feature_code: str,
    reference_id: str | None = None,
    metadata: dict | None = None,
    when: datetime | None = None,
) -> TokenTransaction | InsufficientTokens | FeatureNotPriced:
    pricing = get_feature_pricing(db, feature_code)
    if pricing is None:
        return FeatureNotPriced(feature_code=feature_code)

    return debit_tokens(
        db,
        user_id=user_id,
        amount=pricing.tokens_required,
        feature_code=feature_code,
        description=f"{pricing.feature_name} ({(when or utcnow()).date().isoformat()})",
        reference_id=reference_id,
        metadata=metadata,
    )
