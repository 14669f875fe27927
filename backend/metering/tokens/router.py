from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from metering.admin.rbac import require_scope
from metering.auth.deps import get_current_user
from metering.auth.models import User
from metering.db.session import get_db
from metering.tokens.models import TokenPricing, TokenTransaction
from metering.tokens.schemas import (
    AdjustRequest,
    CreditRequest,
    LedgerCheckResponse,
    PricingListResponse,
    PricingOut,
    PricingPutRequest,
    SpendRequest,
    SpendResponse,
    TransactionHistoryResponse,
    TransactionOut,
    WalletOut,
)
from metering.tokens.service import (
    BalanceAdjustmentError,
    FeatureNotPriced,
    InsufficientTokens,
    admin_adjust_balance,
    credit_tokens,
    get_or_create_wallet,
    get_transaction_history,
    list_feature_pricing,
    set_feature_pricing,
    spend_for_feature,
    verify_ledger,
)

router = APIRouter()
admin_router = APIRouter()


def _to_txn_out(row: TokenTransaction) -> dict:
    return {
        "id": row.id,
        "type": row.type,
        "source": row.source,
        "amount": row.amount,
        "balance_after": row.balance_after,
        "description": row.description,
        "reference_id": row.reference_id,
        "reference_type": row.reference_type,
        "metadata": row.metadata_json or {},
        "created_at": row.created_at,
    }


def _to_pricing_out(row: TokenPricing) -> dict:
    return {
        "feature_code": row.feature_code,
        "feature_name": row.feature_name,
        "tokens_required": row.tokens_required,
        "description": row.description,
    }


def _wallet_out(db: Session, user_id: str) -> dict:
    wallet = get_or_create_wallet(db, user_id)
    return {
        "user_id": wallet.user_id,
        "balance": wallet.balance,
        "total_earned": wallet.total_earned,
        "total_spent": wallet.total_spent,
    }


@router.get("/wallet", response_model=WalletOut)
def my_wallet(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _wallet_out(db, current_user.id)


@router.get("/history", response_model=TransactionHistoryResponse)
def my_history(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = get_transaction_history(db, current_user.id, limit=limit)
    return {"transactions": [_to_txn_out(r) for r in rows]}


@router.get("/pricing", response_model=PricingListResponse)
def pricing(db: Session = Depends(get_db)):
    return {"pricing": [_to_pricing_out(p) for p in list_feature_pricing(db)]}


@router.post("/spend", response_model=SpendResponse)
def spend(
    payload: SpendRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = spend_for_feature(
        db,
        user_id=current_user.id,
        feature_code=payload.feature_code,
        reference_id=payload.reference_id,
    )
    if isinstance(result, FeatureNotPriced):
        raise HTTPException(status_code=404, detail=f"Unknown feature: {result.feature_code}")
    if isinstance(result, InsufficientTokens):
        raise HTTPException(
            status_code=402,
            detail={"error": result.error, "required": result.required, "available": result.available},
        )
    return {"transaction": _to_txn_out(result), "balance": result.balance_after}


# --- Admin ---

@admin_router.get("/users/{user_id}/wallet", response_model=WalletOut)
def user_wallet(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "tokens:read")
    return _wallet_out(db, user_id)


@admin_router.post("/users/{user_id}/credit", response_model=TransactionOut)
def credit(
    user_id: str,
    payload: CreditRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "tokens:write")
    txn = credit_tokens(
        db,
        user_id=user_id,
        amount=payload.amount,
        source=payload.source,
        description=payload.description,
        reference_id=current_user.id,
        reference_type="admin_grant",
        idempotency_key=payload.idempotency_key,
    )
    return _to_txn_out(txn)


@admin_router.post("/users/{user_id}/adjust", response_model=TransactionOut)
def adjust(
    user_id: str,
    payload: AdjustRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "tokens:write")
    try:
        txn = admin_adjust_balance(
            db,
            user_id=user_id,
            amount=payload.amount,
            description=payload.description,
            admin_id=current_user.id,
        )
    except BalanceAdjustmentError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _to_txn_out(txn)


@admin_router.get("/users/{user_id}/verify", response_model=LedgerCheckResponse)
def verify(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "tokens:read")
    check = verify_ledger(db, user_id)
    return {
        "user_id": user_id,
        "ok": check.ok,
        "transactions": check.transactions,
        "balance": check.balance,
        "problems": check.problems,
    }


@admin_router.put("/pricing/{feature_code}", response_model=PricingOut)
def put_pricing(
    feature_code: str,
    payload: PricingPutRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "tokens:write")
    row = set_feature_pricing(
        db,
        feature_code=feature_code,
        feature_name=payload.feature_name,
        tokens_required=payload.tokens_required,
        description=payload.description,
    )
    return _to_pricing_out(row)
