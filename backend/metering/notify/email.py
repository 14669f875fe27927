import json
import logging
from typing import Callable
from urllib import request

from metering.notify.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    pass


class WebhookEmailSender:
    """Hands outbound mail to an HTTP relay as ``{to, subject, html, email_type}``."""

    def __init__(
        self,
        url: str | None,
        *,
        breaker: CircuitBreaker,
        timeout_s: float = 10,
        opener: Callable = request.urlopen,
    ):
        self.url = url
        self.breaker = breaker
        self.timeout_s = timeout_s
        self._opener = opener

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def send(self, *, to: str, subject: str, html: str, email_type: str) -> None:
        if not self.url:
            raise EmailDeliveryError("EMAIL_WEBHOOK_URL is not configured")

        body = json.dumps(
            {"to": to, "subject": subject, "html": html, "email_type": email_type}
        ).encode("utf-8")
        req = request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        def _post() -> None:
            with self._opener(req, timeout=self.timeout_s):
                return

        try:
            self.breaker.call(_post)
        except Exception as exc:
            raise EmailDeliveryError(f"Failed to deliver {email_type} email to {to}") from exc
        logger.info("Sent %s email to %s", email_type, to)
