import json
from datetime import datetime, timezone

import httpx
import pytest

from paysentry.config import Settings
from paysentry.service.notify import LockoutNotice, LogNotifier, WebhookNotifier, build_notifier

NOTICE = LockoutNotice(
    principal_id="p1",
    email="u1@example.com",
    tenant_id="t1",
    reason="Failed login attempts exceeded threshold",
    locked_at=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc),
    attempts=5,
)


async def test_webhook_posts_notice():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    notifier = WebhookNotifier("https://hooks.example.com/lockout", transport=httpx.MockTransport(handler))
    await notifier.account_locked(NOTICE)

    assert len(seen) == 1
    body = json.loads(seen[0].content)
    assert body["type"] == "account_locked"
    assert body["notice"]["principal_id"] == "p1"
    assert body["notice"]["locked_at"] == "2026-03-01T09:30:00+00:00"
    assert body["notice"]["locked_by"] is None


async def test_webhook_error_status_raises():
    notifier = WebhookNotifier(
        "https://hooks.example.com/lockout",
        transport=httpx.MockTransport(lambda request: httpx.Response(502)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await notifier.account_locked(NOTICE)


async def test_log_notifier_never_raises():
    await LogNotifier().account_locked(NOTICE)


def test_build_notifier_selects_by_settings():
    assert isinstance(build_notifier(Settings()), LogNotifier)
    webhook = build_notifier(
        Settings(lockout_webhook_url="https://hooks.example.com/x", notify_timeout_seconds=1.5)
    )
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.timeout_seconds == 1.5
