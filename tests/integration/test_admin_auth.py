"""
Tests for JWT authentication of the admin API.
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_token

STATS_URL = "/api/v1/admin/pool/stats"


async def test_missing_token(client):
    response = await client.get(STATS_URL)
    assert response.status_code in (401, 403)


async def test_valid_admin_token(client, admin_headers):
    response = await client.get(STATS_URL, headers=admin_headers)
    assert response.status_code == 200


@pytest.mark.parametrize("claims", [
    {"is_admin": True, "role": None},
    {"role": None, "roles": ["viewer", "Admin"]},
    {"role": "superadmin"},
])
async def test_admin_claim_variants(client, claims):
    token = make_token(**claims)
    response = await client.get(STATS_URL, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


@pytest.mark.parametrize("claims", [
    {"type": "refresh"},
    {"mfa_verified": False},
    {"exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
])
async def test_rejected_tokens(client, claims):
    token = make_token(**claims)
    response = await client.get(STATS_URL, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


async def test_garbage_token(client):
    response = await client.get(STATS_URL, headers={"Authorization": "Bearer not.a.jwt"})
    assert response.status_code == 401


async def test_non_admin_forbidden(client):
    token = make_token(role="customer")
    response = await client.get(STATS_URL, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


async def test_webhook_does_not_require_jwt(client):
    """Test the webhook is authenticated by signature, not by bearer token."""
    response = await client.post("/webhook", content=b"{}")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "SIGNATURE_INVALID"
