import html
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from metering.core.clock import start_of_hour, utcnow
from metering.core.config import settings
from metering.notify.email import EmailDeliveryError, WebhookEmailSender
from metering.ratelimit.limiter import TIER_LIMITS
from metering.ratelimit.models import RateLimitEvent

logger = logging.getLogger(__name__)

TOP_N = 10
REPORT_EMAIL_TYPE = "rate_limit_report"


@dataclass
class ReportDelivery:
    skipped: bool
    sent: int = 0
    failed: list[str] = field(default_factory=list)
    subject: str | None = None


def _blocked_sum():
    return func.sum(case((RateLimitEvent.was_blocked.is_(True), 1), else_=0))


def get_rate_limit_stats(db: Session, start: datetime, end: datetime) -> dict:
    """Aggregate rate limit events with ``start <= created_at < end``."""
    in_period = (RateLimitEvent.created_at >= start, RateLimitEvent.created_at < end)

    total, blocked, unique = db.execute(
        select(
            func.count(RateLimitEvent.id),
            _blocked_sum(),
            func.count(func.distinct(RateLimitEvent.identifier)),
        ).where(*in_period)
    ).one()

    by_tier = db.execute(
        select(RateLimitEvent.tier, func.count(RateLimitEvent.id), _blocked_sum())
        .where(*in_period)
        .group_by(RateLimitEvent.tier)
    ).all()

    request_count = func.count(RateLimitEvent.id).label("request_count")
    top_identifiers = db.execute(
        select(
            RateLimitEvent.identifier,
            RateLimitEvent.identifier_type,
            func.max(RateLimitEvent.user_id),
            func.max(RateLimitEvent.tier),
            request_count,
            _blocked_sum(),
        )
        .where(*in_period)
        .group_by(RateLimitEvent.identifier, RateLimitEvent.identifier_type)
        .order_by(request_count.desc(), RateLimitEvent.identifier)
        .limit(TOP_N)
    ).all()

    endpoint_count = func.count(RateLimitEvent.id).label("endpoint_count")
    top_endpoints = db.execute(
        select(RateLimitEvent.endpoint, endpoint_count, _blocked_sum())
        .where(*in_period)
        .group_by(RateLimitEvent.endpoint)
        .order_by(endpoint_count.desc(), RateLimitEvent.endpoint)
        .limit(TOP_N)
    ).all()

    # Hour truncation differs per dialect; bucket in Python.
    hourly: dict[datetime, list[int]] = defaultdict(lambda: [0, 0])
    for created_at, was_blocked in db.execute(
        select(RateLimitEvent.created_at, RateLimitEvent.was_blocked).where(*in_period)
    ).all():
        bucket = hourly[start_of_hour(created_at)]
        bucket[0] += 1
        if was_blocked:
            bucket[1] += 1

    return {
        "period_start": start,
        "period_end": end,
        "total_requests": int(total or 0),
        "blocked_requests": int(blocked or 0),
        "unique_identifiers": int(unique or 0),
        "requests_by_tier": {tier: int(n) for tier, n, _ in by_tier},
        "blocked_by_tier": {tier: int(b or 0) for tier, _, b in by_tier if b},
        "top_identifiers": [
            {
                "identifier": identifier,
                "identifier_type": identifier_type,
                "user_id": user_id,
                "tier": tier,
                "request_count": int(n),
                "blocked_count": int(b or 0),
            }
            for identifier, identifier_type, user_id, tier, n, b in top_identifiers
        ],
        "top_endpoints": [
            {"endpoint": endpoint, "request_count": int(n), "blocked_count": int(b or 0)}
            for endpoint, n, b in top_endpoints
        ],
        "hourly_breakdown": [
            {"hour": hour, "requests": counts[0], "blocked": counts[1]}
            for hour, counts in sorted(hourly.items())
        ],
    }


def _env_prefix() -> str:
    return "[PROD]" if settings.is_production else "[DEV]"


def compose_report(stats: dict) -> tuple[str, str]:
    total = stats["total_requests"]
    blocked = stats["blocked_requests"]
    if blocked > 0:
        subject = f"{_env_prefix()} Rate Limit Report: {blocked} blocked of {total} requests"
    else:
        subject = f"{_env_prefix()} Rate Limit Report: {total} requests (no blocks)"

    block_rate = f"{blocked / total * 100:.1f}" if total else "0"
    start = stats["period_start"].strftime("%b %d, %H:%M")
    end = stats["period_end"].strftime("%H:%M")

    def row(*cells) -> str:
        return "<tr>" + "".join(f"<td>{html.escape(str(c))}</td>" for c in cells) + "</tr>"

    parts = [
        f"<h2>Rate limit report {html.escape(start)} - {html.escape(end)} UTC</h2>",
        "<table>",
        row("Total requests", total),
        row("Blocked requests", blocked),
        row("Block rate", f"{block_rate}%"),
        row("Unique clients", stats["unique_identifiers"]),
        "</table>",
        "<h3>Tiers</h3><table>",
        row("Tier", "Limit/min", "Requests", "Blocked"),
    ]
    for tier, limits in TIER_LIMITS.items():
        if tier == "anonymous" and tier not in stats["requests_by_tier"]:
            continue
        parts.append(
            row(
                tier,
                limits.max_requests,
                stats["requests_by_tier"].get(tier, 0),
                stats["blocked_by_tier"].get(tier, 0),
            )
        )
    parts.append("</table>")

    if stats["top_identifiers"]:
        parts.append("<h3>Top clients</h3><table>")
        parts.append(row("Client", "Type", "Tier", "Requests", "Blocked"))
        for item in stats["top_identifiers"][:5]:
            parts.append(
                row(
                    item["identifier"],
                    item["identifier_type"],
                    item["tier"],
                    item["request_count"],
                    item["blocked_count"],
                )
            )
        parts.append("</table>")

    if stats["top_endpoints"]:
        parts.append("<h3>Top endpoints</h3><table>")
        parts.append(row("Endpoint", "Requests", "Blocked"))
        for item in stats["top_endpoints"][:5]:
            parts.append(row(item["endpoint"], item["request_count"], item["blocked_count"]))
        parts.append("</table>")

    return subject, "\n".join(parts)


def send_hourly_rate_limit_report(
    db: Session,
    sender: WebhookEmailSender,
    recipients: list[str],
    now: datetime | None = None,
) -> ReportDelivery:
    """Report on the last full hour. Nothing is sent for an hour without traffic."""
    period_end = start_of_hour(now or utcnow())
    period_start = period_end - timedelta(hours=1)

    stats = get_rate_limit_stats(db, period_start, period_end)
    if stats["total_requests"] == 0:
        logger.info("No API activity between %s and %s, skipping rate limit report", period_start, period_end)
        return ReportDelivery(skipped=True)

    subject, body = compose_report(stats)
    delivery = ReportDelivery(skipped=False, subject=subject)
    for recipient in recipients:
        try:
            sender.send(to=recipient, subject=subject, html=body, email_type=REPORT_EMAIL_TYPE)
            delivery.sent += 1
        except EmailDeliveryError:
            logger.exception("Rate limit report to %s failed", recipient)
            delivery.failed.append(recipient)

    logger.info("Sent hourly rate limit report to %s of %s recipients", delivery.sent, len(recipients))
    return delivery


class RateLimitReportScheduler:
    """Sends the hourly report at the top of every hour (UTC)."""

    JOB_ID = "rate_limit_hourly_report"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sender: WebhookEmailSender,
        recipients: list[str],
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._sender = sender
        self._recipients = list(recipients)
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def job(self) -> Job | None:
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(self.JOB_ID)

    def seconds_until_next_hour(self) -> float:
        now = self._clock()
        return (start_of_hour(now) + timedelta(hours=1) - now).total_seconds()

    def run_once(self) -> ReportDelivery:
        with self._session_factory() as db:
            return send_hourly_rate_limit_report(db, self._sender, self._recipients, now=self._clock())

    def _run_job(self) -> None:
        try:
            self.run_once()
        except Exception:
            logger.exception("Hourly rate limit report failed")

    def start(self) -> None:
        """Must be called from a running event loop (app startup)."""
        if self.running:
            return
        if not self._recipients:
            logger.warning("Rate limit report enabled without recipients; scheduler not started")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        # Plain functions run on the loop's default thread pool.
        scheduler.add_job(
            self._run_job,
            trigger=CronTrigger(minute=0, timezone="UTC"),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Rate limit report scheduler started for %s recipients, first run in %.0fs",
            len(self._recipients),
            self.seconds_until_next_hour(),
        )

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Rate limit report scheduler stopped")
