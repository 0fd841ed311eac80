"""
Tests for payload parsing and event routing.
"""
import json
from unittest.mock import AsyncMock

import pytest

from ciliosclick.core.exceptions import (
    AllocationNotFoundError,
    PayloadMalformedError,
    PoolExhaustedError,
    StorageUnavailableError,
)
from ciliosclick.services.event_router import (
    APPROVAL_EVENTS,
    RELEASE_EVENTS,
    EventRouter,
    parse_payload,
    peek_event_type,
)


def _payload(event="PURCHASE_APPROVED", email="buyer@example.com", transaction="T1", name="Maria"):
    return parse_payload(json.dumps({
        "id": "d-1",
        "event": event,
        "data": {
            "buyer": {"email": email, "name": name},
            "purchase": {"transaction": transaction, "status": "APPROVED"},
        },
    }).encode())


def test_peek_event_type():
    assert peek_event_type(b'{"event": "PURCHASE_APPROVED"}') == "PURCHASE_APPROVED"
    assert peek_event_type(b"not json") is None
    assert peek_event_type(b"[1, 2]") is None
    assert peek_event_type(b'{"event": 5}') is None
    assert peek_event_type(b"\xff\xfe") is None


@pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'"text"', b"{}", b'{"event": ""}', b'{"event": 1}'])
def test_parse_payload_malformed(body):
    with pytest.raises(PayloadMalformedError) as exc_info:
        parse_payload(body)
    assert exc_info.value.status_code == 400


def test_parse_payload_wrong_shape():
    with pytest.raises(PayloadMalformedError) as exc_info:
        parse_payload(b'{"event": "PURCHASE_APPROVED", "data": {"buyer": "nope"}}')
    assert exc_info.value.context["field"] == "data.buyer"


def test_parse_payload_numeric_transaction():
    payload = parse_payload(
        b'{"event": "PURCHASE_APPROVED", "data": {"purchase": {"transaction": 12345}}}'
    )
    assert payload.data.purchase.transaction == "12345"


def test_event_allow_lists():
    assert "PURCHASE_APPROVED" in APPROVAL_EVENTS
    assert "PURCHASE_COMPLETE" in APPROVAL_EVENTS
    assert {"PURCHASE_CANCELED", "PURCHASE_REFUNDED", "PURCHASE_CHARGEBACK"} <= RELEASE_EVENTS
    assert not APPROVAL_EVENTS & RELEASE_EVENTS


@pytest.fixture
def mock_allocator():
    return AsyncMock()


async def test_route_approval(mock_allocator):
    mock_allocator.allocate.return_value = AsyncMock(username="user0001", duplicate=False)
    router = EventRouter(mock_allocator)

    result = await router.route(_payload())

    assert result.outcome == "allocated"
    assert result.username == "user0001"
    assert result.needs_welcome_email is True
    mock_allocator.allocate.assert_awaited_once_with(
        buyer_email="buyer@example.com",
        buyer_name="Maria",
        transaction_id="T1",
        event="PURCHASE_APPROVED",
        notification_id="d-1",
    )


async def test_route_duplicate(mock_allocator):
    mock_allocator.allocate.return_value = AsyncMock(username="user0001", duplicate=True)

    result = await EventRouter(mock_allocator).route(_payload(event="PURCHASE_COMPLETE"))

    assert result.outcome == "duplicate"
    assert result.needs_welcome_email is False


async def test_route_pool_exhausted_is_reported(mock_allocator):
    mock_allocator.allocate.side_effect = PoolExhaustedError("T1")

    result = await EventRouter(mock_allocator).route(_payload())

    assert result.outcome == "pool_exhausted"
    assert result.warning
    assert result.needs_welcome_email is False


@pytest.mark.parametrize("event", sorted(RELEASE_EVENTS))
async def test_route_release(mock_allocator, event):
    mock_allocator.release.return_value = AsyncMock(username="user0001")

    result = await EventRouter(mock_allocator).route(_payload(event=event))

    assert result.outcome == "released"
    mock_allocator.release.assert_awaited_once_with(
        buyer_email="buyer@example.com",
        transaction_id="T1",
        event=event,
    )


async def test_route_release_not_found(mock_allocator):
    mock_allocator.release.side_effect = AllocationNotFoundError("T1")

    result = await EventRouter(mock_allocator).route(_payload(event="PURCHASE_REFUNDED"))

    assert result.outcome == "not_found"


async def test_route_unknown_event_ignored(mock_allocator):
    result = await EventRouter(mock_allocator).route(_payload(event="SUBSCRIPTION_CANCELLATION"))

    assert result.outcome == "ignored"
    mock_allocator.allocate.assert_not_awaited()
    mock_allocator.release.assert_not_awaited()


async def test_route_event_name_case_insensitive(mock_allocator):
    mock_allocator.allocate.return_value = AsyncMock(username="user0001", duplicate=False)

    result = await EventRouter(mock_allocator).route(_payload(event="purchase_approved"))

    assert result.event == "PURCHASE_APPROVED"
    assert result.outcome == "allocated"


@pytest.mark.parametrize("overrides,field", [
    ({"email": ""}, "data.buyer.email"),
    ({"transaction": None}, "data.purchase.transaction"),
])
async def test_route_requires_buyer_and_transaction(mock_allocator, overrides, field):
    with pytest.raises(PayloadMalformedError) as exc_info:
        await EventRouter(mock_allocator).route(_payload(**overrides))
    assert exc_info.value.context["field"] == field


async def test_route_storage_errors_propagate(mock_allocator):
    mock_allocator.allocate.side_effect = StorageUnavailableError(operation="allocate")

    with pytest.raises(StorageUnavailableError):
        await EventRouter(mock_allocator).route(_payload())
