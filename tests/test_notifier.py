import json
import logging

import pytest
import requests

from position_guard.models import ClosedPosition, Side
from position_guard.notifier import SlackNotifier

pytestmark = pytest.mark.unit


class _Response:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_slack_notifier_dry_run(monkeypatch, caplog):
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("SLACK_DRY_RUN", "true")

    notifier = SlackNotifier()
    caplog.set_level(logging.INFO, logger="position_guard.notifier")
    assert notifier.send("hello") is True

    records = [json.loads(rec.message) for rec in caplog.records if rec.name == "position_guard.notifier"]
    assert len(records) == 1
    assert records[0]["type"] == "SLACK_DRY_RUN"
    assert records[0]["payload"]["text"] == "hello"


def test_missing_webhook_implies_dry_run(monkeypatch):
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("SLACK_DRY_RUN", raising=False)
    assert SlackNotifier().dry_run is True


def test_posts_to_webhook(monkeypatch):
    monkeypatch.delenv("SLACK_DRY_RUN", raising=False)
    posted = []

    def _post(url, json=None, timeout=None):
        posted.append((url, json, timeout))
        return _Response()

    monkeypatch.setattr("position_guard.notifier.requests.post", _post)
    notifier = SlackNotifier(webhook_url="https://hooks.example.test/T000", timeout=3.0)
    closed = ClosedPosition(
        symbol="BTC/USDT:USDT",
        side=Side.LONG,
        order_id="1",
        exit_price=49690.0,
        quantity=0.01,
        pnl=-3.6,
        fee=0.5,
        filled=True,
    )

    assert notifier.notify_closed(closed) is True

    ((url, payload, timeout),) = posted
    assert url == "https://hooks.example.test/T000"
    assert timeout == 3.0
    assert "BTC/USDT:USDT" in payload["text"] and "filled" in payload["text"]


def test_webhook_failure_returns_false(monkeypatch, caplog):
    monkeypatch.delenv("SLACK_DRY_RUN", raising=False)
    monkeypatch.setattr("position_guard.notifier.requests.post", lambda *a, **kw: _Response(500))
    notifier = SlackNotifier(webhook_url="https://hooks.example.test/T000")
    caplog.set_level(logging.WARNING, logger="position_guard.notifier")

    assert notifier.notify_close_failed("BTC/USDT:USDT", "rejected") is False
    assert any("Slack webhook failed" in r.getMessage() for r in caplog.records)
