import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from sqlalchemy.orm import Session

from metering.core.clock import utcnow
from metering.ratelimit.models import RateLimitEvent

logger = logging.getLogger(__name__)


class RateLimitEventLogger:
    """Writes rate limit audit rows off the request path.

    Write failures are logged and dropped; they never reach the request that
    produced the event.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_workers: int = 2,
        synchronous: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._executor = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, int(max_workers)),
                thread_name_prefix="rate-limit-events",
            )

    def submit(
        self,
        *,
        identifier: str,
        identifier_type: str,
        user_id: str | None,
        tier: str,
        endpoint: str,
        method: str,
        was_blocked: bool,
        request_count: int,
        limit_value: int,
    ) -> None:
        row = {
            "identifier": identifier,
            "identifier_type": identifier_type,
            "user_id": user_id,
            "tier": tier,
            "endpoint": endpoint,
            "method": method,
            "was_blocked": bool(was_blocked),
            "request_count": int(request_count),
            "limit_value": int(limit_value),
            "created_at": utcnow(),
        }
        if self._executor is None:
            self._write(row)
            return
        try:
            self._executor.submit(self._write, row)
        except RuntimeError:
            logger.warning("Rate limit event dropped; logger is shut down")

    def _write(self, row: dict) -> None:
        try:
            with self._session_factory() as db:
                db.add(RateLimitEvent(id=f"rle_{secrets.token_hex(12)}", **row))
                db.commit()
        except Exception:
            logger.exception("Failed to record rate limit event for %s", row.get("identifier"))

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
