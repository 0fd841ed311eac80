"""
Tests for the credentials email client.
"""
import uuid
from datetime import datetime, timezone

import httpx

from ciliosclick.services.allocator import AllocationResult
from ciliosclick.services.notifications import EmailNotifier


def _allocation(password="Tmp!pass123"):
    return AllocationResult(
        allocation_id=uuid.uuid4(),
        account_id=uuid.uuid4(),
        username="user0001",
        login_email="user0001@ciliosclick.com",
        transaction_id="T1",
        buyer_email="buyer@example.com",
        buyer_name="Maria",
        assigned_at=datetime.now(timezone.utc),
        temporary_password=password,
    )


async def test_send_posts_json(notifier, email_recorder):
    ok = await notifier.send("buyer@example.com", "tpl", {"a": 1})

    assert ok is True
    request = email_recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://mail.test/send"
    assert request.headers["Authorization"] == "Bearer mail-key"
    assert email_recorder.payloads[0] == {
        "to": "buyer@example.com",
        "template_id": "tpl",
        "variables": {"a": 1},
    }


async def test_send_welcome_variables(notifier, email_recorder):
    ok = await notifier.send_welcome(_allocation())

    assert ok is True
    payload = email_recorder.payloads[0]
    assert payload["to"] == "buyer@example.com"
    assert payload["variables"]["username"] == "user0001"
    assert payload["variables"]["login_email"] == "user0001@ciliosclick.com"
    assert payload["variables"]["temporary_password"] == "Tmp!pass123"
    assert payload["variables"]["buyer_name"] == "Maria"
    assert payload["variables"]["login_url"]


async def test_send_welcome_without_password_skips(notifier, email_recorder):
    assert await notifier.send_welcome(_allocation(password=None)) is False
    assert email_recorder.requests == []


async def test_send_http_error_returns_false():
    notifier = EmailNotifier(
        service_url="https://mail.test/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    assert await notifier.send("buyer@example.com", "tpl", {}) is False


async def test_send_transport_error_returns_false():
    def fail(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = EmailNotifier(service_url="https://mail.test/send", transport=httpx.MockTransport(fail))
    assert await notifier.send("buyer@example.com", "tpl", {}) is False


async def test_send_not_configured():
    notifier = EmailNotifier(service_url=None)
    assert notifier.configured is False
    assert await notifier.send("buyer@example.com", "tpl", {}) is False
