from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from metering.admin.rbac import require_scope
from metering.apikeys.router import to_api_key_out
from metering.apikeys.schemas import ApiKeyOut, ApiKeysListResponse
from metering.apikeys.service import get_all_api_keys, get_api_key_by_id
from metering.auth.deps import get_current_user
from metering.auth.models import User
from metering.db.session import get_db

router = APIRouter()


@router.get("/api-keys", response_model=ApiKeysListResponse)
def all_api_keys(
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0, le=100_000),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "apikeys:read")
    return {"keys": [to_api_key_out(k) for k in get_all_api_keys(db, limit=limit, offset=offset)]}


@router.get("/api-keys/{key_id}", response_model=ApiKeyOut)
def api_key_detail(
    key_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_scope(current_user, "apikeys:read")
    row = get_api_key_by_id(db, key_id)
    if row is None:
        raise HTTPException(status_code=404, detail="API key not found")
    return to_api_key_out(row)


@router.get("/breakers")
def breakers(request: Request, current_user: User = Depends(get_current_user)):
    require_scope(current_user, "breakers:write")
    return {"breakers": request.app.state.breakers.stats()}


@router.post("/breakers/{name}/reset")
def reset_breaker(name: str, request: Request, current_user: User = Depends(get_current_user)):
    require_scope(current_user, "breakers:write")
    if not request.app.state.breakers.reset(name):
        raise HTTPException(status_code=404, detail="Circuit breaker not found")
    return {"reset": True, "name": name}


@router.post("/breakers/reset")
def reset_all_breakers(request: Request, current_user: User = Depends(get_current_user)):
    require_scope(current_user, "breakers:write")
    request.app.state.breakers.reset_all()
    return {"reset": True}
