import json
from contextlib import nullcontext

import pytest

from conftest import FakeClock
from metering.notify.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    BreakerRegistry,
    CircuitBreaker,
    CircuitOpenError,
)
from metering.notify.email import EmailDeliveryError, WebhookEmailSender


def _fail():
    raise OSError("upstream down")


def _trip(breaker, times):
    for _ in range(times):
        with pytest.raises(OSError):
            breaker.call(_fail)


def test_breaker_opens_once_failure_share_crosses_threshold():
    breaker = CircuitBreaker("email", error_threshold_pct=50, volume_threshold=4, clock=FakeClock())

    breaker.call(lambda: "ok")
    breaker.call(lambda: "ok")
    _trip(breaker, 1)
    assert breaker.state == CLOSED

    _trip(breaker, 1)

    assert breaker.state == OPEN
    with pytest.raises(CircuitOpenError):
        breaker.call(lambda: "never runs")
    assert breaker.counters.rejects == 1


def test_breaker_half_opens_after_reset_timeout_and_closes_on_success():
    clock = FakeClock()
    breaker = CircuitBreaker("stripe", volume_threshold=2, reset_timeout_s=30, clock=clock)
    _trip(breaker, 2)

    clock.advance(30)

    assert breaker.state == HALF_OPEN
    assert breaker.call(lambda: 42) == 42
    assert breaker.state == CLOSED


def test_failure_while_half_open_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("openai", volume_threshold=2, reset_timeout_s=30, clock=clock)
    _trip(breaker, 2)
    clock.advance(30)

    _trip(breaker, 1)

    assert breaker.state == OPEN


def test_old_successes_age_out_of_the_rolling_window():
    clock = FakeClock()
    breaker = CircuitBreaker(
        "email", error_threshold_pct=60, volume_threshold=5, rolling_window_s=10, clock=clock
    )
    for _ in range(100):
        breaker.call(lambda: "ok")
        clock.advance(60)
    clock.advance(3600)

    failures = 0
    while breaker.state == CLOSED and failures < 50:
        _trip(breaker, 1)
        failures += 1
        clock.advance(1)

    assert breaker.state == OPEN
    assert failures == 5


def test_successes_inside_the_window_still_dilute_failures():
    clock = FakeClock()
    breaker = CircuitBreaker(
        "email", error_threshold_pct=60, volume_threshold=5, rolling_window_s=10, clock=clock
    )
    for _ in range(4):
        breaker.call(lambda: "ok")
    _trip(breaker, 4)

    assert breaker.state == CLOSED

    clock.advance(11)
    _trip(breaker, 5)

    assert breaker.state == OPEN


def test_half_open_admits_a_single_trial_call():
    clock = FakeClock()
    breaker = CircuitBreaker("email", volume_threshold=2, reset_timeout_s=30, clock=clock)
    _trip(breaker, 2)
    clock.advance(30)
    concurrent = []

    def trial():
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "second caller")
        concurrent.append("rejected")
        return "ok"

    assert breaker.call(trial) == "ok"
    assert concurrent == ["rejected"]
    assert breaker.state == CLOSED


def test_registry_reuses_breakers_and_resets_them():
    registry = BreakerRegistry(clock=FakeClock())
    email = registry.get_or_create("email", volume_threshold=1)
    _trip(email, 1)

    assert registry.get_or_create("email") is email
    assert registry.stats()[0]["state"] == OPEN
    assert registry.stats()[0]["stats"]["failures"] == 1
    assert registry.reset("email") is True
    assert email.state == CLOSED
    assert registry.reset("missing") is False


def test_email_sender_posts_json_payload():
    captured = {}

    def opener(req, timeout=None):
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        captured["content_type"] = req.get_header("Content-type")
        return nullcontext()

    sender = WebhookEmailSender(
        "https://mail.example.com/hook",
        breaker=CircuitBreaker("email", clock=FakeClock()),
        timeout_s=5,
        opener=opener,
    )
    sender.send(to="ops@example.com", subject="Hi", html="<p>x</p>", email_type="test")

    assert captured["body"] == {"to": "ops@example.com", "subject": "Hi", "html": "<p>x</p>", "email_type": "test"}
    assert captured["timeout"] == 5
    assert captured["content_type"] == "application/json"


def test_email_sender_fails_fast_when_breaker_is_open():
    calls = []

    def opener(req, timeout=None):
        calls.append(req)
        raise OSError("relay down")

    sender = WebhookEmailSender(
        "https://mail.example.com/hook",
        breaker=CircuitBreaker("email", volume_threshold=1, clock=FakeClock()),
        opener=opener,
    )

    with pytest.raises(EmailDeliveryError):
        sender.send(to="a@example.com", subject="s", html="h", email_type="t")
    with pytest.raises(EmailDeliveryError):
        sender.send(to="a@example.com", subject="s", html="h", email_type="t")

    assert len(calls) == 1


def test_unconfigured_sender_raises():
    sender = WebhookEmailSender(None, breaker=CircuitBreaker("email", clock=FakeClock()))

    assert sender.configured is False
    with pytest.raises(EmailDeliveryError):
        sender.send(to="a@example.com", subject="s", html="h", email_type="t")
