"""
Tests for Gmail watch renewal: token refresh, deactivation on refused
refresh, and failure isolation between connections.
"""

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from invoicely.gmail.oauth import GoogleOAuthClient, OAuthRefreshError
from invoicely.gmail.watch import GmailWatchRenewer, RenewalOutcome
from invoicely.models.gmail import RenewalResult

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
EXPIRED = NOW - timedelta(minutes=5)
VALID = NOW + timedelta(minutes=30)


@pytest_asyncio.fixture
async def oauth_client(settings, google_api):
    client = GoogleOAuthClient(settings.google, transport=httpx.MockTransport(google_api))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def renewer(db, oauth_client, settings, google_api):
    watch_renewer = GmailWatchRenewer(
        db=db,
        oauth_client=oauth_client,
        config=settings.gmail_watch,
        transport=httpx.MockTransport(google_api),
        clock=lambda: NOW,
    )
    yield watch_renewer
    await watch_renewer.aclose()


async def connect(db, email: str, expires_at: datetime, access_token: str = "access-old"):
    return await db.upsert_gmail_connection(
        user_id=f"user-{email}",
        email=email,
        access_token=access_token,
        refresh_token=f"refresh-{email}",
        token_expires_at=expires_at,
    )


@pytest.mark.asyncio
async def test_refused_refresh_deactivates_connection(db, renewer, google_api):
    connection = await connect(db, "a@example.com", EXPIRED)
    google_api.refresh_responses["refresh-a@example.com"] = (
        400,
        {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
    )

    result = await renewer.renew_all()

    assert result == RenewalResult(renewed=0, failed=1)
    stored = await db.get_gmail_connection(connection.id)
    assert stored.is_active is False
    assert google_api.count("watch") == 0

    audit = await db.list_audit_entries(resource_type="gmail_connection")
    assert audit[0]["action"] == "DEACTIVATE"
    assert "invalid_grant" in audit[0]["details"]


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_watch(db, renewer, google_api):
    connection = await connect(db, "a@example.com", EXPIRED)

    result = await renewer.renew_all()

    assert result == RenewalResult(renewed=1, failed=0)
    assert google_api.count("refresh") == 1

    watch_request = [r for r in google_api.requests if r.url.path.endswith("/watch")][0]
    assert watch_request.headers["Authorization"] == "Bearer fresh-access-token"

    stored = await db.get_gmail_connection(connection.id)
    assert stored.access_token == "fresh-access-token"
    assert stored.token_expires_at == NOW + timedelta(seconds=3599)
    assert stored.last_history_id == "9001"


@pytest.mark.asyncio
async def test_token_expiring_exactly_now_is_refreshed(db, renewer, google_api):
    await connect(db, "a@example.com", NOW)

    result = await renewer.renew_all()

    assert result.renewed == 1
    assert google_api.count("refresh") == 1


@pytest.mark.asyncio
async def test_valid_token_skips_refresh(db, renewer, google_api):
    await connect(db, "a@example.com", VALID)

    result = await renewer.renew_all()

    assert result.renewed == 1
    assert google_api.count("refresh") == 0


@pytest.mark.asyncio
async def test_watch_request_carries_topic_and_labels(db, renewer, google_api, settings):
    await connect(db, "a@example.com", VALID)

    await renewer.renew_all()

    watch_request = [r for r in google_api.requests if r.url.path.endswith("/watch")][0]
    assert json.loads(watch_request.content) == {
        "topicName": settings.gmail_watch.topic_name,
        "labelIds": ["INBOX"],
    }


@pytest.mark.asyncio
async def test_watch_failure_keeps_connection_active(db, renewer, google_api):
    connection = await connect(db, "a@example.com", VALID, access_token="access-a")
    google_api.watch_responses["access-a"] = (403, {"error": {"message": "forbidden"}})

    result = await renewer.renew_all()

    assert result == RenewalResult(renewed=0, failed=1)
    stored = await db.get_gmail_connection(connection.id)
    assert stored.is_active is True
    assert stored.last_history_id is None


@pytest.mark.asyncio
async def test_watch_response_without_history_id_fails(db, renewer, google_api):
    await connect(db, "a@example.com", VALID, access_token="access-a")
    google_api.watch_responses["access-a"] = (200, {"expiration": "1742688000000"})

    result = await renewer.renew_all()

    assert result.failed == 1


@pytest.mark.asyncio
async def test_unreachable_token_endpoint_counts_as_failed(db, renewer, google_api):
    connection = await connect(db, "a@example.com", EXPIRED)
    google_api.fail_refresh_transport = True

    outcome = await renewer.renew_connection(connection)

    assert outcome == RenewalOutcome.FAILED
    assert (await db.get_gmail_connection(connection.id)).is_active is True


@pytest.mark.asyncio
async def test_token_endpoint_5xx_counts_as_failed(db, renewer, google_api):
    connection = await connect(db, "a@example.com", EXPIRED)
    google_api.refresh_responses["refresh-a@example.com"] = (503, {})

    outcome = await renewer.renew_connection(connection)

    assert outcome == RenewalOutcome.FAILED
    assert (await db.get_gmail_connection(connection.id)).is_active is True


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_run(db, renewer, google_api):
    await connect(db, "a@example.com", EXPIRED)
    await connect(db, "b@example.com", VALID, access_token="access-b")
    await connect(db, "c@example.com", VALID, access_token="access-c")
    google_api.refresh_responses["refresh-a@example.com"] = (400, {"error": "invalid_grant"})
    google_api.watch_responses["access-b"] = (500, {})

    result = await renewer.renew_all()

    assert result == RenewalResult(renewed=1, failed=2)
    active = await db.list_active_gmail_connections()
    assert sorted(c.email for c in active) == ["b@example.com", "c@example.com"]


@pytest.mark.asyncio
async def test_inactive_connections_are_skipped(db, renewer, google_api):
    connection = await connect(db, "a@example.com", VALID)
    await db.deactivate_gmail_connection(connection.id, reason="user_disconnected")

    result = await renewer.renew_all()

    assert result == RenewalResult(renewed=0, failed=0)
    assert google_api.requests == []


@pytest.mark.asyncio
async def test_oauth_error_response_raises(oauth_client, google_api):
    google_api.refresh_responses["revoked"] = (401, {"error": "unauthorized_client"})

    with pytest.raises(OAuthRefreshError) as exc_info:
        await oauth_client.refresh_access_token("revoked")

    assert exc_info.value.error == "unauthorized_client"
