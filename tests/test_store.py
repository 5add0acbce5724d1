"""
tests/test_store.py -- Unit tests for auth/store.py (AuthStore repository).

Covers:
  - User create / lookup by id, username, email (case-insensitive), OAuth subject
  - Duplicate username or email raises IntegrityError
  - update_user whitelist, role validation, boolean storage
  - A malformed stored role reads back as None
  - count_active_admins ignores inactive admins
  - promote_pending is single-use and refuses expired records
  - record_totp_step detects replays
  - record_failure increments within the window and restarts after it
  - Expiry sweeps for every transient table
  - ping() on a live and a disposed engine
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from auth.models import PendingAuthentication, Role, Session, User

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def _user(store, username="ada", email="Ada@Example.org", **fields) -> User:
    uid = store.create_user(User(username=username, email=email, **fields))
    return store.get_by_id(uid)


def _session(sid="s1", user_id=1, ttl=3600) -> Session:
    return Session(id=sid, user_id=user_id, created_at=T0, expires_at=T0 + timedelta(seconds=ttl), last_accessed_at=T0)


class TestUsers:
    def test_create_and_lookup(self, store):
        user = _user(store, display_name="Ada L.")
        assert user.id is not None
        assert user.email == "ada@example.org"
        assert user.display_name == "Ada L."
        assert user.role == Role.MEMBER
        assert user.created_at
        assert store.get_by_username("ada").id == user.id
        assert store.get_by_email("ADA@example.ORG").id == user.id
        assert store.has_users() is True

    def test_display_name_defaults_to_username(self, store):
        assert _user(store).display_name == "ada"

    def test_missing_user(self, store):
        assert store.get_by_id(12345) is None
        assert store.get_by_username("nobody") is None
        assert store.has_users() is False

    def test_duplicate_username(self, store):
        _user(store)
        with pytest.raises(IntegrityError):
            _user(store, email="other@example.org")

    def test_duplicate_email_case_insensitive(self, store):
        _user(store)
        with pytest.raises(IntegrityError):
            _user(store, username="ada2", email="ADA@EXAMPLE.ORG")

    def test_oauth_link(self, store):
        user = _user(store)
        assert store.get_by_oauth("github", "42") is None
        store.link_oauth(user.id, "github", "42")
        linked = store.get_by_oauth("github", "42")
        assert linked.id == user.id
        assert linked.oauth_provider == "github"

    def test_list_users_newest_first(self, store):
        first = _user(store)
        second = _user(store, username="bob", email="bob@example.org")
        assert [u.id for u in store.list_users()] == [second.id, first.id]


class TestUpdateUser:
    def test_update_fields(self, store):
        user = _user(store)
        assert store.update_user(user.id, role="ADMIN", is_active=False, email="NEW@example.org") is True
        updated = store.get_by_id(user.id)
        assert updated.role == Role.ADMIN
        assert updated.is_active is False
        assert updated.email == "new@example.org"

    def test_unknown_field_rejected(self, store):
        user = _user(store)
        with pytest.raises(ValueError):
            store.update_user(user.id, id=99)

    def test_invalid_role_rejected(self, store):
        user = _user(store)
        with pytest.raises(ValueError):
            store.update_user(user.id, role="superuser")

    def test_missing_user_returns_false(self, store):
        assert store.update_user(999, is_active=False) is False

    def test_malformed_stored_role_reads_as_none(self, store):
        user = _user(store)
        with store.engine.begin() as conn:
            conn.execute(text("UPDATE users SET role = 'superuser' WHERE id = :id"), {"id": user.id})
        assert store.get_by_id(user.id).role is None

    def test_count_active_admins(self, store):
        _user(store, role=Role.ADMIN)
        inactive = _user(store, username="bob", email="bob@example.org", role=Role.ADMIN)
        _user(store, username="cy", email="cy@example.org")
        store.update_user(inactive.id, is_active=False)
        assert store.count_active_admins() == 1


class TestSessionsAndPending:
    def test_session_round_trip(self, store):
        store.insert_session(_session())
        loaded = store.get_session("s1")
        assert loaded.expires_at == T0 + timedelta(hours=1)
        assert loaded.user_id == 1

    def test_delete_user_sessions_keep(self, store):
        store.insert_session(_session("a"))
        store.insert_session(_session("b"))
        assert store.delete_user_sessions(1, keep="a") == 1
        assert store.get_session("a") is not None
        assert store.get_session("b") is None

    def test_promote_pending_single_use(self, store):
        store.insert_pending(PendingAuthentication(id="p1", user_id=1, created_at=T0, expires_at=T0 + timedelta(minutes=5)))
        assert store.promote_pending("p1", _session("s1"), T0) is True
        assert store.promote_pending("p1", _session("s2"), T0) is False
        assert store.get_pending("p1") is None
        assert store.get_session("s1") is not None
        assert store.get_session("s2") is None

    def test_promote_expired_pending_refused(self, store):
        store.insert_pending(PendingAuthentication(id="p1", user_id=1, created_at=T0, expires_at=T0 + timedelta(minutes=5)))
        assert store.promote_pending("p1", _session(), T0 + timedelta(minutes=5)) is False
        assert store.get_session("s1") is None

    def test_promote_collision_keeps_pending(self, store):
        store.insert_session(_session("s1"))
        store.insert_pending(PendingAuthentication(id="p1", user_id=1, created_at=T0, expires_at=T0 + timedelta(minutes=5)))
        with pytest.raises(IntegrityError):
            store.promote_pending("p1", _session("s1"), T0)
        assert store.get_pending("p1") is not None


class TestTransientState:
    def test_totp_step_replay(self, store):
        expires = T0 + timedelta(minutes=2)
        assert store.record_totp_step(1, 1000, expires) is True
        assert store.record_totp_step(1, 1000, expires) is False
        assert store.record_totp_step(1, 1001, expires) is True
        assert store.record_totp_step(2, 1000, expires) is True

    def test_failure_window(self, store):
        assert store.record_failure("login", "ada", T0, 60) == 1
        assert store.record_failure("login", "ada", T0 + timedelta(seconds=30), 60) == 2
        count, started = store.get_failures("login", "ada")
        assert (count, started) == (2, T0)
        # Window elapsed: the counter restarts.
        assert store.record_failure("login", "ada", T0 + timedelta(seconds=61), 60) == 1
        store.clear_failures("login", "ada")
        assert store.get_failures("login", "ada") is None

    def test_sweeps(self, store):
        later = T0 + timedelta(hours=2)
        store.insert_session(_session("old", ttl=60))
        store.insert_session(_session("new", ttl=3 * 3600))
        store.insert_pending(PendingAuthentication(id="p", user_id=1, created_at=T0, expires_at=T0 + timedelta(minutes=5)))
        store.record_totp_step(1, 1, T0 + timedelta(minutes=2))
        store.record_failure("totp", "1", T0, 300)

        assert store.delete_expired_sessions(later) == 1
        assert store.delete_expired_pending(later) == 1
        assert store.delete_expired_totp_steps(later) == 1
        assert store.delete_stale_failures(later - timedelta(seconds=300)) == 1
        assert store.get_session("new") is not None


class TestPing:
    def test_ping_live(self, store):
        assert store.ping() is True
