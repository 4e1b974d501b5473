"""Tests for expiry notice delivery."""

import json
import logging

import httpx

from conftest import run
from notifications import LogNotifier, WebhookNotifier, build_notifier


def test_webhook_posts_json():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier("https://hooks.test/admin", transport=httpx.MockTransport(handler))
    run(notifier.notify("License expiring soon", "3 days left", {"daysUntilExpiry": 3}))

    assert received == [{
        "subject": "License expiring soon",
        "message": "3 days left",
        "payload": {"daysUntilExpiry": 3},
    }]


def test_webhook_failure_is_logged_not_raised(caplog):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = WebhookNotifier("https://hooks.test/admin", transport=httpx.MockTransport(handler))

    with caplog.at_level(logging.ERROR, logger="notifications"):
        run(notifier.notify("License expiring soon", "3 days left"))

    assert "Failed to deliver notice" in caplog.text


def test_webhook_http_error_is_logged(caplog):
    notifier = WebhookNotifier(
        "https://hooks.test/admin",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )

    with caplog.at_level(logging.ERROR, logger="notifications"):
        run(notifier.notify("License expiring soon", "3 days left"))

    assert "Failed to deliver notice" in caplog.text


def test_log_notifier(caplog):
    with caplog.at_level(logging.WARNING, logger="notifications"):
        run(LogNotifier().notify("License expiring soon", "3 days left"))

    assert "License expiring soon: 3 days left" in caplog.text


def test_build_notifier(test_settings):
    assert isinstance(build_notifier(test_settings), LogNotifier)

    webhook = build_notifier(test_settings.model_copy(update={"ADMIN_NOTIFY_URL": "https://hooks.test/admin"}))
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.url == "https://hooks.test/admin"
