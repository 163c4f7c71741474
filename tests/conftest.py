"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test environment (required settings, fast bcrypt, no retry backoff)
- Temporary SQLite billing databases
- Fake Polar, Google and auth backends (httpx.MockTransport)
- FastAPI test client with dependency overrides
"""

import asyncio
import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio

# Settings are read once per process; the app module builds them at import.
_TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="invoicely-tests-"))

TEST_ENV = {
    "SUPABASE_URL": "https://auth.invoicely.test",
    "SUPABASE_SERVICE_ROLE_KEY": "service-role-key-for-tests",
    "POLAR_ACCESS_TOKEN": "polar_oat_test_token",
    "POLAR_WEBHOOK_SECRET": "polar-webhook-secret-for-tests",
    "POLAR_RETRY_BACKOFF_SECONDS": "0",
    "GOOGLE_CLIENT_ID": "google-client-id",
    "GOOGLE_CLIENT_SECRET": "google-client-secret",
    "GOOGLE_RETRY_BACKOFF_SECONDS": "0",
    "GMAIL_WATCH_TOPIC_NAME": "projects/invoicely-test/topics/gmail-push",
    "DATABASE_PATH": str(_TEST_DATA_DIR / "invoicely.db"),
    "UPLOAD_LINK_BCRYPT_ROUNDS": "4",
    "LOGGING_JSON_OUTPUT": "false",
}

for _key, _value in TEST_ENV.items():
    os.environ.setdefault(_key, _value)


from fastapi.testclient import TestClient  # noqa: E402

from invoicely.auth.dependencies import USER_TOKEN_CACHE  # noqa: E402
from invoicely.auth.supabase import AuthenticatedUser, get_auth_client  # noqa: E402
from invoicely.billing.polar_client import PolarClient, get_polar_client  # noqa: E402
from invoicely.config import Settings, get_settings  # noqa: E402
from invoicely.gmail.oauth import GoogleOAuthClient  # noqa: E402
from invoicely.gmail.watch import GmailWatchRenewer  # noqa: E402
from invoicely.rate_limits import limiter  # noqa: E402
from invoicely.storage.database import BillingDatabase, get_billing_db  # noqa: E402

FIXED_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)

USER_TOKEN = "user-token-ada"
SERVICE_TOKEN = TEST_ENV["SUPABASE_SERVICE_ROLE_KEY"]


class FakeAuthBackend:
    """Resolves known bearer tokens to users."""

    def __init__(self):
        self.users: dict[str, AuthenticatedUser] = {}
        self.calls = 0

    async def get_user(self, access_token: str) -> AuthenticatedUser | None:
        self.calls += 1
        return self.users.get(access_token)


class FakePolarAPI:
    """Answers customer and checkout creation like Polar, recording every request."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.customer_status = 201
        self.checkout_status = 201
        self.checkout_url = "https://polar.test/checkout/chk_1"
        self.customer_id = "polar_cus_1"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content or b"{}")

        if request.url.path == "/v1/customers/":
            if self.customer_status >= 400:
                return httpx.Response(self.customer_status, json={"detail": "customer rejected"})
            return httpx.Response(
                201,
                json={"id": self.customer_id, "email": body["email"], "name": body["name"]},
            )

        if request.url.path == "/v1/checkouts/":
            if self.checkout_status >= 400:
                return httpx.Response(self.checkout_status, json={"detail": "checkout rejected"})
            return httpx.Response(201, json={"id": "chk_1", "url": self.checkout_url})

        return httpx.Response(404, json={"detail": "Not found"})

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def json_bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


class FakeGoogleAPI:
    """
    Token endpoint and Gmail users.watch.

    refresh_responses maps a refresh token to (status, body); watch_responses
    maps an access token to (status, body). Unknown tokens succeed.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.refresh_responses: dict[str, tuple[int, dict]] = {}
        self.watch_responses: dict[str, tuple[int, dict]] = {}
        self.fail_refresh_transport = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == "oauth2.googleapis.com":
            if self.fail_refresh_transport:
                raise httpx.ConnectError("connection refused", request=request)
            form = dict(parse_qsl(request.content.decode()))
            status, body = self.refresh_responses.get(
                form.get("refresh_token", ""),
                (200, {"access_token": "fresh-access-token", "expires_in": 3599}),
            )
            return httpx.Response(status, json=body)

        if request.url.path.endswith("/watch"):
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            status, body = self.watch_responses.get(
                token, (200, {"historyId": "9001", "expiration": "1742688000000"})
            )
            return httpx.Response(status, json=body)

        return httpx.Response(404)

    def count(self, kind: str) -> int:
        if kind == "refresh":
            return sum(1 for r in self.requests if r.url.host == "oauth2.googleapis.com")
        return sum(1 for r in self.requests if r.url.path.endswith("/watch"))


@pytest.fixture(autouse=True)
def reset_request_state():
    """Token cache and rate limit counters are process-wide."""
    USER_TOKEN_CACHE.clear()
    limiter.reset()
    yield
    USER_TOKEN_CACHE.clear()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-ada", email="ada@example.com", full_name="Ada Lovelace")


@pytest_asyncio.fixture
async def db(tmp_path):
    database = BillingDatabase(db_path=str(tmp_path / "billing.db"))
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
def polar_api() -> FakePolarAPI:
    return FakePolarAPI()


@pytest_asyncio.fixture
async def polar_client(settings, polar_api):
    client = PolarClient(settings.polar, transport=httpx.MockTransport(polar_api))
    yield client
    await client.aclose()


@pytest.fixture
def google_api() -> FakeGoogleAPI:
    return FakeGoogleAPI()


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


@pytest.fixture
def api_db(tmp_path):
    database = BillingDatabase(db_path=str(tmp_path / "api.db"))
    asyncio.run(database.initialize())
    yield database
    database.close()


@pytest.fixture
def auth_backend(user) -> FakeAuthBackend:
    backend = FakeAuthBackend()
    backend.users[USER_TOKEN] = user
    return backend


@pytest.fixture
def app_client(settings, api_db, auth_backend, polar_api, google_api):
    """FastAPI test client with storage and third-party backends replaced."""
    from invoicely.main import app
    from invoicely.routers.gmail import get_gmail_watch_renewer

    api_polar_client = PolarClient(settings.polar, transport=httpx.MockTransport(polar_api))

    async def override_renewer():
        transport = httpx.MockTransport(google_api)
        oauth_client = GoogleOAuthClient(settings.google, transport=transport)
        renewer = GmailWatchRenewer(
            db=api_db,
            oauth_client=oauth_client,
            config=settings.gmail_watch,
            transport=transport,
            clock=lambda: FIXED_NOW,
        )
        try:
            yield renewer
        finally:
            await renewer.aclose()
            await oauth_client.aclose()

    app.dependency_overrides[get_billing_db] = lambda: api_db
    app.dependency_overrides[get_auth_client] = lambda: auth_backend
    app.dependency_overrides[get_polar_client] = lambda: api_polar_client
    app.dependency_overrides[get_gmail_watch_renewer] = override_renewer

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_TOKEN}"}
