import secrets

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.auth.models import User
from metering.auth.security import create_access_token
from metering.core.config import settings
from metering.db.session import get_db
from metering.system.schemas import BootstrapRequest

router = APIRouter()


@router.post("/bootstrap")
def bootstrap(
    payload: BootstrapRequest,
    db: Session = Depends(get_db),
    x_bootstrap_secret: str | None = Header(default=None, alias="X-Bootstrap-Secret"),
):
    if not settings.BOOTSTRAP_ENABLED:
        raise HTTPException(status_code=403, detail="Bootstrap is disabled")

    expected = settings.BOOTSTRAP_SECRET
    if not expected or not x_bootstrap_secret or not secrets.compare_digest(x_bootstrap_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid bootstrap secret")

    # Only allowed before any admin exists
    if db.execute(select(User.id).where(User.role == "admin").limit(1)).first() is not None:
        raise HTTPException(status_code=409, detail="Bootstrap already completed")

    user = User(id=payload.admin_id, email=str(payload.admin_email).lower(), role="admin")
    db.add(user)
    db.commit()

    token = create_access_token({"sub": user.id, "role": user.role, "email": user.email})
    return {
        "admin": {"id": user.id, "email": user.email, "role": user.role},
        "access_token": token,
        "token_type": "bearer",
    }
