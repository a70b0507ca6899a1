# Tests for the user directory.

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from godwear_auth.models import Identity
from godwear_auth.users import UserDirectory


def _identity(email="a@x.com", name="A", picture=None):
    return Identity(provider_id="g1", email=email, display_name=name, avatar_url=picture, email_verified=True)


@pytest.fixture
def directory(database, clock):
    return UserDirectory(database, clock=clock)


class TestUpsert:
    def test_fresh_email_creates_active_user(self, directory):
        user, is_new = directory.upsert(_identity())
        assert is_new is True
        assert user.id
        assert user.email == "a@x.com"
        assert user.status == "active"
        assert user.email_verified is True
        assert user.created_at == user.last_login_at

    def test_returning_user_keeps_id_and_refreshes_profile(self, directory, clock):
        first, _ = directory.upsert(_identity(name="A"))
        clock.advance(hours=2)
        second, is_new = directory.upsert(_identity(name="Alice", picture="https://example.com/p.png"))
        assert is_new is False
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.last_login_at != first.last_login_at
        assert second.name == "Alice"
        assert second.picture == "https://example.com/p.png"

    def test_status_survives_relogin(self, directory):
        user, _ = directory.upsert(_identity())
        directory.set_status(user.id, "suspended")
        again, is_new = directory.upsert(_identity())
        assert is_new is False
        assert again.status == "suspended"

    def test_email_is_normalized(self, directory):
        user, _ = directory.upsert(_identity(email="  A@X.COM "))
        assert user.email == "a@x.com"
        assert directory.find_by_email("A@x.com").id == user.id

    def test_concurrent_first_logins_create_one_user(self, directory, database):
        barrier = threading.Barrier(4)

        def login():
            barrier.wait()
            return directory.upsert(_identity(email="race@x.com"))

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: login(), range(4)))

        assert sum(1 for _, is_new in results if is_new) == 1
        assert len({user.id for user, _ in results}) == 1
        with database.connection_scope() as con:
            count = con.execute("SELECT COUNT(*) FROM users WHERE email = ?", ("race@x.com",)).fetchone()[0]
        assert count == 1


class TestLookups:
    def test_unknown_email(self, directory):
        assert directory.find_by_email("nobody@x.com") is None

    def test_find_by_id(self, directory):
        user, _ = directory.upsert(_identity())
        assert directory.find_by_id(user.id).email == "a@x.com"
        assert directory.find_by_id("missing") is None

    def test_set_status_rejects_unknown_value(self, directory):
        user, _ = directory.upsert(_identity())
        with pytest.raises(ValueError):
            directory.set_status(user.id, "banned")
