from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from metering.apikeys.models import ApiKey
from metering.apikeys.schemas import (
    ApiKeyCreateRequest,
    ApiKeyCreatedResponse,
    ApiKeyOut,
    ApiKeysListResponse,
)
from metering.apikeys.service import (
    create_api_key,
    delete_api_key,
    get_api_keys_by_user,
    revoke_api_key,
)
from metering.auth.deps import get_current_user
from metering.auth.models import User
from metering.db.session import get_db

router = APIRouter()


def to_api_key_out(row: ApiKey) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "name": row.name,
        "key_prefix": row.key_prefix,
        "is_active": bool(row.is_active),
        "expires_at": row.expires_at,
        "last_used_at": row.last_used_at,
        "created_at": row.created_at,
    }


@router.post("", response_model=ApiKeyCreatedResponse, status_code=201)
def create_key(
    payload: ApiKeyCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    row, key = create_api_key(
        db,
        user_id=current_user.id,
        name=payload.name.strip(),
        expires_at=payload.expires_at,
    )
    return {**to_api_key_out(row), "key": key}


@router.get("", response_model=ApiKeysListResponse)
def list_keys(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return {"keys": [to_api_key_out(k) for k in get_api_keys_by_user(db, current_user.id)]}


@router.post("/{key_id}/revoke", response_model=ApiKeyOut)
def revoke_key(
    key_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    row = revoke_api_key(db, key_id, current_user.id)
    if row is None:
        raise HTTPException(status_code=404, detail="API key not found")
    return to_api_key_out(row)


@router.delete("/{key_id}")
def delete_key(
    key_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not delete_api_key(db, key_id, current_user.id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"deleted": True, "key_id": key_id}
