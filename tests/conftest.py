# Shared fixtures for the auth service tests.

import datetime as dt
import urllib.request

import pytest
from fastapi.testclient import TestClient

from godwear_auth.audit import AuditLog
from godwear_auth.config import AuthConfig
from godwear_auth.main import create_app
from godwear_auth.models import RequestInfo
from godwear_auth.oauth import GoogleOAuthClient, ProviderRequestFailed
from godwear_auth.service import AuthService
from godwear_auth.sessions import SessionStore
from godwear_auth.store import Database
from godwear_auth.tokens import TokenCodec
from godwear_auth.users import UserDirectory

SECRET = "test-signing-secret"


class StubOAuthClient(GoogleOAuthClient):
    """Google client with canned responses at the HTTP seam."""

    def __init__(self, config):
        super().__init__(config)
        self.token_response = {"access_token": "ya29.test-token", "token_type": "Bearer", "expires_in": 3599}
        self.userinfo = {"id": "g1", "email": "a@x.com", "verified_email": True, "name": "A"}
        self.token_status = None
        self.userinfo_status = None
        self.requests = []

    def _send(self, req: urllib.request.Request):
        self.requests.append(req)
        if req.full_url == self.token_url:
            if self.token_status:
                raise ProviderRequestFailed(f"http_{self.token_status}", status=self.token_status)
            return dict(self.token_response)
        if self.userinfo_status:
            raise ProviderRequestFailed(f"http_{self.userinfo_status}", status=self.userinfo_status)
        return dict(self.userinfo)

    @property
    def exchange_calls(self):
        return sum(1 for req in self.requests if req.full_url == self.token_url)

    @property
    def userinfo_calls(self):
        return sum(1 for req in self.requests if req.full_url == self.userinfo_url)


class CountingUserDirectory(UserDirectory):
    def __init__(self, database, **kwargs):
        super().__init__(database, **kwargs)
        self.upsert_calls = 0

    def upsert(self, identity):
        self.upsert_calls += 1
        return super().upsert(identity)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_welcome_email(self, *, email, name):
        if self.fail:
            raise RuntimeError("mail provider unavailable")
        self.sent.append((email, name))


class MutableClock:
    def __init__(self, start=None):
        self.now = start or dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + dt.timedelta(**kwargs)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def config(tmp_path):
    return AuthConfig(
        environment="development",
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="client-secret",
        redirect_uri="http://testserver/auth/callback",
        jwt_secret=SECRET,
        admin_emails=frozenset({"admin@example.com"}),
        db_path=str(tmp_path / "auth.sqlite3"),
        cookie_secure=False,
    )


@pytest.fixture
def database(config):
    db = Database(config.db_path)
    db.initialize()
    return db


@pytest.fixture
def users(database):
    return CountingUserDirectory(database)


@pytest.fixture
def sessions(database):
    return SessionStore(database)


@pytest.fixture
def audit(database):
    return AuditLog(database)


@pytest.fixture
def oauth_client(config):
    return StubOAuthClient(config)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def codec(config):
    return TokenCodec(SECRET, issuer=config.token_issuer, audience=config.token_audience)


@pytest.fixture
def service(config, database, users, sessions, audit, oauth_client, notifier, codec):
    return AuthService(
        config,
        oauth_client=oauth_client,
        users=users,
        sessions=sessions,
        audit=audit,
        codec=codec,
        notifier=notifier,
        database=database,
    )


@pytest.fixture
def request_info():
    return RequestInfo(ip_address="203.0.113.7", user_agent="pytest-agent", base_url="http://testserver/")


@pytest.fixture
def login_as(service, oauth_client, request_info):
    """Run a successful callback for the given identity and return the result."""

    def _login(email="a@x.com", name="A", provider_id="g1"):
        oauth_client.userinfo = {"id": provider_id, "email": email, "verified_email": True, "name": name}
        result, error = service.process_callback("valid-code", "s1", "s1", request_info)
        assert error is None
        return result

    return _login


@pytest.fixture
def app(service):
    return create_app(service)


@pytest.fixture
def client(app):
    return TestClient(app)
