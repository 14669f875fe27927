from fastapi import HTTPException

from metering.auth.models import User


ROLE_SCOPES: dict[str, set[str]] = {
    "admin": {
        "quota:read",
        "quota:write",
        "ratelimit:read",
        "ratelimit:write",
        "tokens:read",
        "tokens:write",
        "apikeys:read",
        "breakers:write",
    },
    "support": {"quota:read", "ratelimit:read", "tokens:read", "apikeys:read"},
    "user": set(),
}


def require_scope(user: User, scope: str) -> None:
    role = (user.role or "user").lower()
    allowed = ROLE_SCOPES.get(role, set())
    if scope not in allowed:
        raise HTTPException(status_code=403, detail=f"Missing required scope: {scope}")
