from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security.utils import get_authorization_scheme_param
from sqlalchemy.orm import Session

from metering.apikeys.service import looks_like_api_key, validate_api_key
from metering.db.session import get_db
from metering.quota.service import get_user_tier
from metering.ratelimit.limiter import TierLimit, get_tier_limits

ANONYMOUS_TIER = "anonymous"


@dataclass(frozen=True)
class ApiKeyContext:
    api_key_id: str | None
    user_id: str | None
    tier: str
    limits: TierLimit

    @property
    def authenticated(self) -> bool:
        return self.api_key_id is not None


def _extract_key(x_api_key: str | None, authorization: str | None) -> str | None:
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    scheme, param = get_authorization_scheme_param(authorization)
    if scheme.lower() == "bearer" and looks_like_api_key(param):
        return param
    return None


def _resolve_context(db: Session, raw_key: str) -> ApiKeyContext:
    key = validate_api_key(db, raw_key)
    if key is None:
        raise HTTPException(
            status_code=401,
            detail={
                "error": "Invalid or expired API key",
                "message": "The provided API key is invalid, revoked, or expired",
            },
        )

    tier = get_user_tier(db, key.user_id).name
    return ApiKeyContext(
        api_key_id=key.id,
        user_id=key.user_id,
        tier=tier,
        limits=get_tier_limits(tier),
    )


def api_key_auth(
    request: Request,
    db: Session = Depends(get_db),
    x_api_key: str | None = Header(default=None, alias="X-Api-Key"),
    authorization: str | None = Header(default=None),
) -> ApiKeyContext:
    raw_key = _extract_key(x_api_key, authorization)
    if not raw_key:
        raise HTTPException(
            status_code=401,
            detail={
                "error": "API key required",
                "message": "Please provide an API key via the X-Api-Key header",
            },
        )

    ctx = _resolve_context(db, raw_key)
    request.state.api_context = ctx
    return ctx


def optional_api_key_auth(
    request: Request,
    db: Session = Depends(get_db),
    x_api_key: str | None = Header(default=None, alias="X-Api-Key"),
    authorization: str | None = Header(default=None),
) -> ApiKeyContext:
    raw_key = _extract_key(x_api_key, authorization)
    if not raw_key:
        ctx = ApiKeyContext(
            api_key_id=None,
            user_id=None,
            tier=ANONYMOUS_TIER,
            limits=get_tier_limits(ANONYMOUS_TIER),
        )
    else:
        # A key that was sent but does not validate is still an error.
        ctx = _resolve_context(db, raw_key)

    request.state.api_context = ctx
    return ctx
