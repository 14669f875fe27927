from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from metering.apikeys.deps import ApiKeyContext, api_key_auth, optional_api_key_auth
from metering.db.session import get_db
from metering.ratelimit.limiter import RateLimitDecision
from metering.ratelimit.overrides import resolve_override

OVERRIDE_WINDOW_SECONDS = 60


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(request: Request, db: Session, ctx: ApiKeyContext) -> RateLimitDecision:
    state = request.app.state

    if ctx.api_key_id:
        identifier, identifier_type = ctx.api_key_id, "api_key"
    else:
        identifier, identifier_type = _client_ip(request), "ip"

    override = resolve_override(db, state.override_cache, identifier_type, identifier)
    if override is not None:
        max_requests, window_seconds = override.max_per_minute, OVERRIDE_WINDOW_SECONDS
    else:
        max_requests, window_seconds = ctx.limits.max_requests, ctx.limits.window_seconds

    decision = state.rate_limiter.hit(
        f"{identifier_type}:{identifier}",
        max_requests=max_requests,
        window_seconds=window_seconds,
    )

    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_seconds),
        "X-RateLimit-Tier": ctx.tier,
    }
    request.state.rate_limit_headers = headers

    state.event_logger.submit(
        identifier=identifier,
        identifier_type=identifier_type,
        user_id=ctx.user_id,
        tier=ctx.tier,
        endpoint=request.url.path,
        method=request.method,
        was_blocked=not decision.allowed,
        request_count=decision.count,
        limit_value=decision.limit,
    )

    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Rate limit exceeded",
                "message": (
                    f"You have exceeded {decision.limit} requests per minute. "
                    f"Please wait {decision.reset_seconds} seconds."
                ),
                "retry_after": decision.reset_seconds,
                "tier": ctx.tier,
                "limit": decision.limit,
            },
            headers={**headers, "Retry-After": str(decision.reset_seconds)},
        )

    return decision


def rate_limit_with(auth_dependency):
    def _dep(
        request: Request,
        db: Session = Depends(get_db),
        ctx: ApiKeyContext = Depends(auth_dependency),
    ) -> ApiKeyContext:
        enforce_rate_limit(request, db, ctx)
        return ctx

    return _dep


api_rate_limit = rate_limit_with(api_key_auth)
optional_api_rate_limit = rate_limit_with(optional_api_key_auth)
