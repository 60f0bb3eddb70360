"""
Unit tests for the Session Store
Tests partial updates, persistence, login/sign-up/logout and expiry handling
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from services.auth_service import AuthError
from services.device_location import LocationPermission
from services.session_store import (
    AUTHENTICATED, SESSION_KEY, UNAUTHENTICATED, USER_COLLECTION, Session, SessionStore
)
from tests.fakes import FakeAuthProvider, FakeDocumentStore, MemoryStorage, auth_error
from utils.geo import LocationFix

NOW = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
BRISBANE = LocationFix(-27.4698, 153.0251, 0.1, 0.1)


class TestSessionModel:
    """Test the Session value type"""

    def test_default_session(self):
        session = Session()
        assert session.auth_state == UNAUTHENTICATED
        assert session.user_id is None
        assert session.current_location is None
        assert session.is_default() is True

    def test_to_dict_from_dict(self):
        session = Session(
            auth_state=AUTHENTICATED, user_id='uid-1', account_type=3, active=1,
            current_location=BRISBANE,
            location_permission=LocationPermission('granted', True),
            session_start_time=NOW.isoformat(),
            expiry=(NOW + timedelta(hours=1)).isoformat(),
        )
        restored = Session.from_dict(json.loads(json.dumps(session.to_dict())))
        assert restored == session

    def test_from_dict_tolerates_garbage(self):
        """Malformed fields fall back to defaults instead of failing"""
        restored = Session.from_dict({
            'auth_state': 'bogus',
            'account_type': 'not-a-number',
            'current_location': {'latitude': 'x'},
            'expiry': 'yesterday',
        })
        assert restored == Session()
        assert Session.from_dict(None) == Session()

    def test_from_dict_drops_auth_without_expiry(self):
        """Authenticated snapshot without an expiry loses its auth fields"""
        restored = Session.from_dict({
            'auth_state': AUTHENTICATED,
            'user_id': 'uid-1',
            'current_location': BRISBANE.to_dict(),
        })
        assert restored.auth_state == UNAUTHENTICATED
        assert restored.user_id is None
        assert restored.current_location == BRISBANE

    def test_is_expired(self):
        session = Session(expiry=(NOW - timedelta(seconds=1)).isoformat())
        assert session.is_expired(NOW) is True
        assert Session(expiry=(NOW + timedelta(seconds=1)).isoformat()).is_expired(NOW) is False
        assert Session().is_expired(NOW) is False


class TestSessionStoreUpdates:
    """Test update/clear/is_authenticated"""

    def setup_method(self):
        self.storage = MemoryStorage()
        self.auth = FakeAuthProvider()
        self.documents = FakeDocumentStore()
        self.store = SessionStore(self.storage, self.auth, self.documents, clock=lambda: NOW)

    def test_starts_unauthenticated(self):
        assert self.store.is_authenticated() is False
        assert self.store.session == Session()

    def test_authenticated_update(self):
        """Default session + authenticated partial -> is_authenticated()"""
        async def scenario():
            self.store.update({
                'auth_state': AUTHENTICATED,
                'session_start_time': NOW.isoformat(),
                'expiry': (NOW + timedelta(seconds=3600)).isoformat(),
                'account_type': 1,
                'active': 1,
            })
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.is_authenticated() is True

    def test_updates_fold_in_call_order(self):
        """Result equals left-fold shallow merge of partials over the default"""
        other = LocationFix(-33.8688, 151.2093, 0.1, 0.1)
        partials = [
            {'current_location': BRISBANE},
            {'search_location': other},
            {'current_location': other},
            {'location_permission': LocationPermission('denied', False)},
            {'search_location': None},
        ]

        async def scenario():
            for partial in partials:
                self.store.update(partial)
            await self.store.flush()

        asyncio.run(scenario())

        expected = {}
        for partial in partials:
            expected.update(partial)
        assert self.store.session == Session(**expected)

    def test_update_accepts_keywords_and_dicts(self):
        async def scenario():
            self.store.update(current_location=BRISBANE.to_dict())
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.session.current_location == BRISBANE

    def test_update_unknown_field_raises(self):
        with pytest.raises(ValueError):
            self.store.update(theme='dark')
        assert self.store.session == Session()

    def test_update_rejects_authenticated_without_expiry(self):
        with pytest.raises(ValueError):
            self.store.update(auth_state=AUTHENTICATED)
        assert self.store.is_authenticated() is False

    def test_update_rejects_user_fields_while_unauthenticated(self):
        with pytest.raises(ValueError):
            self.store.update(account_type=4)

    def test_clear_always_unauthenticates(self):
        async def scenario():
            await self.store.login('user@example.com', 'Secret123')
            self.store.update(current_location=BRISBANE)
            self.store.clear()
            self.store.clear()  # idempotent
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.is_authenticated() is False
        assert self.store.session == Session()
        assert SESSION_KEY not in self.storage.data

    def test_update_persists_snapshot(self):
        async def scenario():
            self.store.update(current_location=BRISBANE)
            await self.store.flush()

        asyncio.run(scenario())
        stored = json.loads(self.storage.data[SESSION_KEY])
        assert Session.from_dict(stored).current_location == BRISBANE

    def test_default_session_not_written(self):
        async def scenario():
            self.store.update(search_location=None)
            await self.store.flush()

        asyncio.run(scenario())
        assert ('set', SESSION_KEY) not in self.storage.calls

    def test_persistence_failure_is_not_raised(self):
        """Storage write errors are logged, never surfaced"""
        self.storage.fail_set = True

        async def scenario():
            self.store.update(current_location=BRISBANE)
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.session.current_location == BRISBANE

    def test_observers_receive_changes(self):
        seen = []
        unsubscribe = self.store.subscribe(seen.append)

        async def scenario():
            self.store.update(current_location=BRISBANE)
            unsubscribe()
            self.store.update(current_location=None)
            await self.store.flush()

        asyncio.run(scenario())
        assert len(seen) == 1
        assert seen[0].current_location == BRISBANE

    def test_failing_observer_does_not_block_update(self):
        def broken(_session):
            raise RuntimeError("render failed")

        self.store.subscribe(broken)

        async def scenario():
            self.store.update(current_location=BRISBANE)
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.session.current_location == BRISBANE


class TestSessionStoreAuth:
    """Test login, sign-up and logout delegation"""

    def setup_method(self):
        self.storage = MemoryStorage()
        self.auth = FakeAuthProvider()
        self.documents = FakeDocumentStore({
            (USER_COLLECTION, 'uid-123'): {'accountType': 2, 'active': 1},
        })
        self.store = SessionStore(self.storage, self.auth, self.documents, clock=lambda: NOW)

    def test_login_folds_profile(self):
        session = asyncio.run(self.store.login('user@example.com', 'Secret123'))

        assert session.auth_state == AUTHENTICATED
        assert session.user_id == 'uid-123'
        assert session.account_type == 2
        assert session.active == 1
        assert session.session_start_time == NOW.isoformat()
        assert session.expiry == (NOW + timedelta(hours=1)).isoformat()

    def test_authenticated_session_has_later_expiry(self):
        asyncio.run(self.store.login('user@example.com', 'Secret123'))
        session = self.store.session
        start = datetime.fromisoformat(session.session_start_time)
        expiry = datetime.fromisoformat(session.expiry)
        assert expiry > start

    def test_login_failure_leaves_session_unchanged(self):
        self.auth.sign_in_error = auth_error()

        async def scenario():
            self.store.update(current_location=BRISBANE)
            before = self.store.session
            with pytest.raises(AuthError) as exc_info:
                await self.store.login('user@example.com', 'wrong')
            return before, exc_info.value

        before, error = asyncio.run(scenario())
        assert self.store.session == before
        assert error.message == 'Invalid email or password'

    def test_login_without_profile_uses_null_fields(self):
        del self.documents.docs[(USER_COLLECTION, 'uid-123')]
        session = asyncio.run(self.store.login('user@example.com', 'Secret123'))

        assert session.auth_state == AUTHENTICATED
        assert session.account_type is None
        assert session.active is None

    def test_login_with_unreadable_profile_uses_null_fields(self):
        self.documents.fail_reads = True
        session = asyncio.run(self.store.login('user@example.com', 'Secret123'))
        assert session.auth_state == AUTHENTICATED
        assert session.account_type is None

    def test_login_inactive_account_rejected(self):
        self.documents.docs[(USER_COLLECTION, 'uid-123')] = {'accountType': 1, 'active': 0}

        with pytest.raises(AuthError) as exc_info:
            asyncio.run(self.store.login('user@example.com', 'Secret123'))

        assert exc_info.value.code == 'account-inactive'
        assert self.auth.sign_out_calls == 1
        assert self.store.is_authenticated() is False

    def test_sign_up_writes_default_profile(self):
        self.auth.next_uid = 'uid-new'
        session = asyncio.run(self.store.sign_up('new@example.com', 'Secret123'))

        profile = self.documents.docs[(USER_COLLECTION, 'uid-new')]
        assert profile['accountType'] == 1
        assert profile['active'] == 1
        assert session.auth_state == AUTHENTICATED
        assert session.account_type == 1
        assert session.active == 1

    def test_sign_up_failure_leaves_session_unchanged(self):
        self.auth.sign_up_error = AuthError('EMAIL_EXISTS', 'Email already in use')

        with pytest.raises(AuthError):
            asyncio.run(self.store.sign_up('taken@example.com', 'Secret123'))

        assert self.store.session == Session()
        assert list(self.documents.docs) == [(USER_COLLECTION, 'uid-123')]

    def test_logout_clears_session(self):
        async def scenario():
            await self.store.login('user@example.com', 'Secret123')
            await self.store.logout()
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.is_authenticated() is False
        assert SESSION_KEY not in self.storage.data

    def test_logout_clears_even_when_provider_fails(self):
        """Sign-out failure still clears the session, then reports the error"""
        self.auth.sign_out_error = AuthError('sign-out-failed', 'Logout failed. Please try again.')

        async def scenario():
            await self.store.login('user@example.com', 'Secret123')
            with pytest.raises(AuthError):
                await self.store.logout()
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.is_authenticated() is False
        assert self.store.session == Session()

    def test_logout_wraps_unexpected_errors(self):
        self.auth.sign_out_error = ConnectionError("offline")

        async def scenario():
            await self.store.login('user@example.com', 'Secret123')
            with pytest.raises(AuthError) as exc_info:
                await self.store.logout()
            return exc_info.value

        error = asyncio.run(scenario())
        assert error.code == 'sign-out-failed'
        assert self.store.is_authenticated() is False

    def test_session_validity(self):
        asyncio.run(self.store.login('user@example.com', 'Secret123'))

        assert self.store.is_session_valid(NOW + timedelta(minutes=30)) is True
        assert self.store.is_session_valid(NOW + timedelta(hours=2)) is False

    def test_suspended_account_session_invalid(self):
        self.documents.docs[(USER_COLLECTION, 'uid-123')] = {'accountType': 1, 'active': 2}
        asyncio.run(self.store.login('user@example.com', 'Secret123'))

        assert self.store.is_authenticated() is True
        assert self.store.is_session_valid(NOW) is False

    def test_check_expiry_clears_elapsed_session(self):
        now = [NOW]
        store = SessionStore(self.storage, self.auth, self.documents, clock=lambda: now[0])

        async def scenario():
            await store.login('user@example.com', 'Secret123')
            assert store.check_expiry() is False
            now[0] = NOW + timedelta(hours=1, seconds=1)
            assert store.check_expiry() is True
            await store.flush()

        asyncio.run(scenario())
        assert store.is_authenticated() is False

    def test_refresh_profile(self):
        async def scenario():
            await self.store.login('user@example.com', 'Secret123')
            self.documents.docs[(USER_COLLECTION, 'uid-123')]['accountType'] = 4
            await self.store.refresh_profile()

        asyncio.run(scenario())
        assert self.store.session.account_type == 4
