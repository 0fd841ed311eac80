"""
End-to-end tests for the Hotmart webhook endpoint.
"""
import pytest
from sqlalchemy import select

from conftest import TEST_HOTTOK, hotmart_body, signed_headers
from ciliosclick.core.exceptions import DatabaseError
from ciliosclick.models.accounts import AllocationRecord, PreProvisionedAccount
from ciliosclick.models.webhook_event import WebhookEvent
from ciliosclick.services.audit_log import AuditLog


async def _account_status(session_factory, username):
    async with session_factory() as session:
        return await session.scalar(
            select(PreProvisionedAccount.status).where(PreProvisionedAccount.username == username)
        )


async def _audit_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(WebhookEvent).order_by(WebhookEvent.received_at))
        return list(result.scalars().all())


@pytest.fixture
async def one_account_pool(allocator):
    await allocator.seed_accounts(count=1, prefix="user")
    return allocator


async def test_purchase_lifecycle_scenario(client, one_account_pool, session_factory, email_recorder):
    """
    Approve, redeliver, cancel, then an invalid signature, with one account in the pool.
    """
    approve = hotmart_body("PURCHASE_APPROVED", "T1")

    response = await client.post("/webhook", content=approve, headers=signed_headers(approve))
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "allocated"
    assert data["username"] == "user0001"
    assert data["transaction_id"] == "T1"
    assert await _account_status(session_factory, "user0001") == "occupied"

    # Credentials email sent in the background
    assert len(email_recorder.requests) == 1
    assert email_recorder.payloads[0]["variables"]["username"] == "user0001"

    # Redelivery: same account, pool unchanged, no second email
    response = await client.post("/webhook", content=approve, headers=signed_headers(approve))
    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"
    assert response.json()["username"] == "user0001"
    assert len(email_recorder.requests) == 1

    cancel = hotmart_body("PURCHASE_CANCELED", "T1")
    response = await client.post("/webhook", content=cancel, headers=signed_headers(cancel))
    assert response.status_code == 200
    assert response.json()["outcome"] == "released"
    assert await _account_status(session_factory, "user0001") == "available"

    tampered = hotmart_body("PURCHASE_APPROVED", "T2")
    response = await client.post(
        "/webhook",
        content=tampered,
        headers={"Content-Type": "application/json", "X-Signature": "sha256=" + "ab" * 32},
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "SIGNATURE_INVALID"
    assert await _account_status(session_factory, "user0001") == "available"

    rows = await _audit_rows(session_factory)
    assert len(rows) == 4
    assert [r.signature_valid for r in rows] == [True, True, True, False]
    assert rows[-1].raw_payload == tampered
    assert rows[-1].processed is False
    assert all(r.processed for r in rows[:3])


async def test_signature_without_prefix(client, one_account_pool):
    body = hotmart_body()
    response = await client.post("/webhook", content=body, headers=signed_headers(body, prefix=False))
    assert response.status_code == 200
    assert response.json()["outcome"] == "allocated"


async def test_versioned_path_and_hotmart_header(client, one_account_pool):
    body = hotmart_body()
    headers = signed_headers(body)
    headers["X-Hotmart-Signature"] = headers.pop("X-Signature")

    response = await client.post("/api/v1/hotmart/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["outcome"] == "allocated"


async def test_hottok_authentication(client, one_account_pool):
    body = hotmart_body()
    response = await client.post(
        "/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hotmart-Hottok": TEST_HOTTOK},
    )
    assert response.status_code == 200


async def test_missing_credentials_rejected_and_audited(client, one_account_pool, session_factory):
    body = hotmart_body()
    response = await client.post("/webhook", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 401
    assert "X-Trace-Id" in response.headers
    rows = await _audit_rows(session_factory)
    assert len(rows) == 1
    assert rows[0].signature_valid is False
    assert rows[0].event_type == "PURCHASE_APPROVED"
    assert rows[0].error_message == "Signature validation failed"


async def test_reserialized_body_rejected(client, one_account_pool):
    """Test a signature over different bytes of the same JSON does not authenticate."""
    body = hotmart_body()
    signed_over = body.replace(b", ", b",")

    response = await client.post("/webhook", content=body, headers=signed_headers(signed_over))

    assert response.status_code == 401


async def test_malformed_payload(client, one_account_pool, session_factory):
    body = b'{"no_event": true}'
    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PAYLOAD_MALFORMED"
    rows = await _audit_rows(session_factory)
    assert rows[0].event_type == "UNKNOWN"
    assert rows[0].error_message.startswith("Malformed payload")


async def test_not_json_payload(client, one_account_pool):
    body = b"definitely not json"
    response = await client.post("/webhook", content=body, headers=signed_headers(body))
    assert response.status_code == 400


async def test_missing_transaction(client, one_account_pool):
    body = b'{"event": "PURCHASE_APPROVED", "data": {"buyer": {"email": "b@example.com"}}}'
    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["error"]["context"]["field"] == "data.purchase.transaction"


async def test_unknown_event_acknowledged(client, one_account_pool, session_factory):
    body = hotmart_body("PURCHASE_BILLET_PRINTED")
    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"
    assert await _account_status(session_factory, "user0001") == "available"


async def test_release_without_allocation(client, one_account_pool):
    body = hotmart_body("PURCHASE_REFUNDED", "never-seen")
    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 200
    assert response.json()["outcome"] == "not_found"


async def test_pool_exhausted_is_200_with_warning(client, one_account_pool, session_factory):
    first = hotmart_body("PURCHASE_APPROVED", "T1")
    await client.post("/webhook", content=first, headers=signed_headers(first))

    second = hotmart_body("PURCHASE_APPROVED", "T2", email="other@example.com")
    response = await client.post("/webhook", content=second, headers=signed_headers(second))

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "pool_exhausted"
    assert data["warning"]
    rows = await _audit_rows(session_factory)
    assert rows[-1].processed is True
    assert rows[-1].error_message == data["warning"]


async def test_storage_unavailable_is_503(client, one_account_pool, monkeypatch):
    from ciliosclick.core.exceptions import StorageUnavailableError
    from ciliosclick.services.allocator import UserAllocator

    async def unavailable(self, *args, **kwargs):
        raise StorageUnavailableError(operation="allocate")

    monkeypatch.setattr(UserAllocator, "allocate", unavailable)
    body = hotmart_body()

    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"


async def test_email_failure_does_not_fail_webhook(client, one_account_pool, email_recorder):
    email_recorder.status_code = 500
    body = hotmart_body()

    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 200
    assert response.json()["outcome"] == "allocated"
    assert len(email_recorder.requests) == 1


async def test_credentials_sent_when_audit_update_fails(
    client, one_account_pool, email_recorder, monkeypatch
):
    """Test the buyer gets credentials even if the delivery fails after allocating."""
    original_mark_processed = AuditLog.mark_processed
    failures = []

    async def fail_once(self, event_id, error_message=None):
        if not failures:
            failures.append(event_id)
            raise DatabaseError(detail="audit store unavailable", operation="audit_outcome")
        return await original_mark_processed(self, event_id, error_message=error_message)

    monkeypatch.setattr(AuditLog, "mark_processed", fail_once)
    body = hotmart_body()

    response = await client.post("/webhook", content=body, headers=signed_headers(body))
    assert response.status_code == 500
    assert len(email_recorder.requests) == 1
    assert email_recorder.payloads[0]["variables"]["temporary_password"]

    # Hotmart redelivers: same account, no second password
    response = await client.post("/webhook", content=body, headers=signed_headers(body))
    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"
    assert len(email_recorder.requests) == 1


async def test_oversized_buyer_email_is_malformed(client, one_account_pool, session_factory):
    body = hotmart_body(email="a" * 250 + "@example.com")
    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PAYLOAD_MALFORMED"
    assert await _account_status(session_factory, "user0001") == "available"


async def test_oversized_buyer_name_is_truncated(client, one_account_pool, session_factory):
    body = hotmart_body(name="Maria " * 60)
    response = await client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 200
    assert response.json()["outcome"] == "allocated"
    async with session_factory() as session:
        record = await session.scalar(select(AllocationRecord))
    assert len(record.buyer_name) <= 255


async def test_health_and_metrics(client):
    response = await client.get("/health/live")
    assert response.json() == {"status": "alive"}

    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "ciliosclick_webhook_deliveries_total" in response.text
