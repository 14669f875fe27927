import secrets
from datetime import datetime
from hashlib import sha256

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from metering.apikeys.models import ApiKey
from metering.core.clock import utcnow
from metering.core.config import settings

KEY_PREFIX_LENGTH = 12


def hash_api_key(raw_key: str) -> str:
    return sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> tuple[str, str, str]:
    key = f"{settings.API_KEY_PREFIX}{secrets.token_hex(32)}"
    return key, hash_api_key(key), key[:KEY_PREFIX_LENGTH]


def looks_like_api_key(value: str | None) -> bool:
    return bool(value) and value.startswith(settings.API_KEY_PREFIX)


def create_api_key(
    db: Session,
    *,
    user_id: str,
    name: str,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, str]:
    """Returns the stored row and the plaintext key, which is never stored."""
    key, key_hash, prefix = generate_api_key()
    row = ApiKey(
        id=f"ak_{secrets.token_hex(12)}",
        user_id=user_id,
        name=name,
        key_hash=key_hash,
        key_prefix=prefix,
        is_active=True,
        expires_at=expires_at,
        created_at=utcnow(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row, key


def get_api_keys_by_user(db: Session, user_id: str) -> list[ApiKey]:
    return list(
        db.execute(
            select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.created_at.desc())
        ).scalars().all()
    )


def get_all_api_keys(db: Session, *, limit: int = 200, offset: int = 0) -> list[ApiKey]:
    return list(
        db.execute(
            select(ApiKey).order_by(ApiKey.created_at.desc()).limit(limit).offset(offset)
        ).scalars().all()
    )


def get_api_key_by_id(db: Session, key_id: str) -> ApiKey | None:
    return db.get(ApiKey, key_id)


def validate_api_key(db: Session, raw_key: str, now: datetime | None = None) -> ApiKey | None:
    now = now or utcnow()
    row = db.execute(
        select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key), ApiKey.is_active.is_(True))
    ).scalar_one_or_none()
    if row is None:
        return None

    if row.expires_at and row.expires_at < now:
        return None

    row.last_used_at = now
    db.commit()
    return row


def revoke_api_key(db: Session, key_id: str, user_id: str) -> ApiKey | None:
    row = db.execute(
        select(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id)
    ).scalar_one_or_none()
    if row is None:
        return None
    row.is_active = False
    db.commit()
    db.refresh(row)
    return row


def delete_api_key(db: Session, key_id: str, user_id: str) -> bool:
    result = db.execute(delete(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id))
    db.commit()
    return bool(result.rowcount)
