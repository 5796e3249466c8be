"""
Tests for the Salla token lifecycle manager.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from app.models import User
from app.services.refresh_lock import RefreshLock
from app.services.salla_client import (
    SallaAPIError,
    SallaIdentityError,
    SallaTransportError,
    TokenResponse,
)
from app.services.token_manager import (
    LiveToken,
    ProviderTransportError,
    ReauthorizationRequired,
    SallaTokenManager,
)
from app.services.token_store import TokenStore
from app.utils.encryption import decrypt_token, encrypt_token

pytestmark = pytest.mark.anyio


async def test_for_user_decrypts_tokens(db, make_user, mock_salla):
    user, record = await make_user(access_token="ory_at_plain", refresh_token="ory_rt_plain")

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)

    assert manager.token.access_token == "ory_at_plain"
    assert manager.token.refresh_token == "ory_rt_plain"
    assert manager.token.expires_at > datetime.now(timezone.utc)
    assert manager.is_expiring() is False


async def test_for_user_reads_legacy_plaintext_rows(db, make_user, mock_salla):
    user, record = await make_user()
    record.access_token = "ory_at_legacy"
    record.refresh_token = "ory_rt_legacy"
    await db.commit()

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)

    assert manager.token.access_token == "ory_at_legacy"
    assert manager.token.refresh_token == "ory_rt_legacy"


async def test_request_uses_live_token(db, make_user, mock_salla):
    user, record = await make_user(access_token="ory_at_plain")

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    result = await manager.request("GET", "store/info", params={"a": 1})

    assert result["data"]["name"] == "Test Store"
    mock_salla.fetch_resource.assert_awaited_once_with(
        "GET", "store/info", "ory_at_plain", params={"a": 1}
    )
    mock_salla.refresh.assert_not_awaited()


async def test_request_refreshes_expired_token_first(db, make_user, mock_salla):
    user, record = await make_user(refresh_token="ory_rt_plain", expired=True)

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    assert manager.is_expiring() is True

    await manager.request("GET", "store/info")

    mock_salla.refresh.assert_awaited_once_with("ory_rt_plain")
    mock_salla.fetch_resource.assert_awaited_once_with("GET", "store/info", "ory_at_refreshed-access")

    stored = await TokenStore(db).find(user.id)
    assert stored.access_token == encrypt_token("ory_at_refreshed-access")
    assert decrypt_token(stored.refresh_token) == "ory_rt_refreshed-refresh"
    assert manager.token.access_token == "ory_at_refreshed-access"
    assert manager.is_expiring() is False


async def test_refresh_keeps_refresh_token_when_not_rotated(db, make_user, mock_salla):
    user, record = await make_user(refresh_token="ory_rt_plain", expired=True)
    mock_salla.refresh.return_value = TokenResponse(
        access_token="ory_at_new", refresh_token=None, expires_in=3600
    )

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    await manager.refresh()

    stored = await TokenStore(db).find(user.id)
    assert decrypt_token(stored.refresh_token) == "ory_rt_plain"


async def test_refresh_rejected_leaves_record_untouched(db, make_user, mock_salla):
    user, record = await make_user(expired=True)
    before = (record.access_token, record.refresh_token, record.expires_at, record.expires_in)
    mock_salla.refresh.side_effect = SallaIdentityError("invalid_grant", status_code=400)

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    with pytest.raises(ReauthorizationRequired):
        await manager.request("GET", "store/info")

    stored = await TokenStore(db).find(user.id)
    await db.refresh(stored)
    assert (stored.access_token, stored.refresh_token, stored.expires_at, stored.expires_in) == before
    mock_salla.fetch_resource.assert_not_awaited()
    mock_salla.refresh.assert_awaited_once()


async def test_refresh_transport_error_is_surfaced(db, make_user, mock_salla):
    user, record = await make_user(expired=True)
    original = record.access_token
    mock_salla.refresh.side_effect = SallaTransportError("Request timeout", status_code=504)

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    with pytest.raises(ProviderTransportError):
        await manager.refresh()

    stored = await TokenStore(db).find(user.id)
    assert stored.access_token == original


async def test_request_maps_revoked_access_token(db, make_user, mock_salla):
    user, record = await make_user()
    mock_salla.fetch_resource.side_effect = SallaIdentityError("Unauthorized", status_code=401)

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    with pytest.raises(ReauthorizationRequired):
        await manager.request("GET", "store/info")


async def test_request_passes_other_api_errors(db, make_user, mock_salla):
    user, record = await make_user()
    mock_salla.fetch_resource.side_effect = SallaAPIError("Not found", status_code=404)

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    with pytest.raises(SallaAPIError):
        await manager.request("GET", "products/1")


async def test_user_without_token_needs_reauthorization(db, mock_salla):
    user = User(email="new@example.com")
    db.add(user)
    await db.commit()

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)

    assert manager.token is None
    with pytest.raises(ReauthorizationRequired):
        await manager.request("GET", "store/info")


async def test_unbound_manager_raises(db, mock_salla):
    with pytest.raises(RuntimeError):
        await SallaTokenManager(db, client=mock_salla).refresh()


async def test_refresh_adopts_token_rotated_elsewhere(db, make_user, mock_salla):
    user, record = await make_user(expired=True)
    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)

    # Another worker refreshes while this manager still holds the old token
    await TokenStore(db).upsert(
        user_id=user.id,
        access_token="ory_at_other-worker",
        refresh_token="ory_rt_other-worker",
        expires_in=3600,
    )

    issued = await manager.refresh()

    mock_salla.refresh.assert_not_awaited()
    assert issued.access_token == "ory_at_other-worker"
    assert manager.token.access_token == "ory_at_other-worker"


async def test_concurrent_refreshes_call_provider_once(db, make_user, mock_salla):
    user, record = await make_user(expired=True)

    async def slow_refresh(refresh_token):
        await asyncio.sleep(0.05)
        return TokenResponse(
            access_token="ory_at_single", refresh_token="ory_rt_single", expires_in=3600
        )

    mock_salla.refresh.side_effect = slow_refresh
    lock = RefreshLock(timeout=5)

    first = await SallaTokenManager(db, client=mock_salla, lock=lock).for_user(user)
    second = await SallaTokenManager(db, client=mock_salla, lock=lock).for_user(user)

    await asyncio.gather(first.refresh(), second.refresh())

    assert mock_salla.refresh.await_count == 1
    assert first.token.access_token == "ory_at_single"
    assert second.token.access_token == "ory_at_single"


async def test_get_resource_owner(db, make_user, mock_salla):
    user, record = await make_user(access_token="ory_at_plain")

    manager = await SallaTokenManager(db, client=mock_salla).for_user(user)
    owner = await manager.get_resource_owner()

    assert owner["email"] == "merchant@example.com"
    mock_salla.get_resource_owner.assert_awaited_once_with("ory_at_plain")


def test_live_token_expiry():
    record_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    token = LiveToken(access_token="a", refresh_token="r", expires_at=record_time)

    assert token.is_expired(now=record_time) is True
    assert token.is_expired(now=datetime(2025, 12, 31, tzinfo=timezone.utc)) is False
