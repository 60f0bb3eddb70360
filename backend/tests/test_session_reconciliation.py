"""
Startup reconciliation tests for the Session Store
Persisted snapshot vs. live authentication provider notifications
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from services.auth_service import AuthError
from services.session_store import (
    AUTHENTICATED, SESSION_KEY, UNAUTHENTICATED, USER_COLLECTION, Session, SessionStore
)
from tests.fakes import FakeAuthProvider, FakeDocumentStore, MemoryStorage, auth_error
from utils.geo import LocationFix

NOW = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
BRISBANE = LocationFix(-27.4698, 153.0251, 0.1, 0.1)
SYDNEY = LocationFix(-33.8688, 151.2093, 0.1, 0.1)


def authenticated_snapshot(user_id='uid-1', started=NOW - timedelta(minutes=10), **overrides):
    fields = dict(
        auth_state=AUTHENTICATED,
        user_id=user_id,
        account_type=1,
        active=1,
        current_location=BRISBANE,
        search_location=SYDNEY,
        session_start_time=started.isoformat(),
        expiry=(started + timedelta(hours=1)).isoformat(),
    )
    fields.update(overrides)
    return Session(**fields)


async def settle():
    await asyncio.sleep(0.01)


class TestSessionReconciliation:
    """Test the snapshot/provider reconciliation performed at startup"""

    def setup_method(self):
        self.auth = FakeAuthProvider()
        self.documents = FakeDocumentStore({
            (USER_COLLECTION, 'uid-1'): {'accountType': 1, 'active': 1},
            (USER_COLLECTION, 'uid-2'): {'accountType': 3, 'active': 1},
        })

    def make_store(self, snapshot=None):
        data = {SESSION_KEY: json.dumps(snapshot.to_dict())} if snapshot else None
        self.storage = MemoryStorage(data)
        return SessionStore(self.storage, self.auth, self.documents, clock=lambda: NOW)

    def test_expired_snapshot_reset_to_defaults(self):
        """Snapshot whose expiry passed one second ago is not applied"""
        expired = authenticated_snapshot(started=NOW - timedelta(hours=1, seconds=1))
        store = self.make_store(expired)

        async def scenario():
            await store.start()
            self.auth.emit('uid-1')
            assert await store.wait_ready(timeout=1)
            await store.flush()

        asyncio.run(scenario())

        # Live provider still has uid-1, so a fresh session is folded,
        # but nothing from the expired snapshot survives
        assert store.session.current_location is None
        assert store.session.search_location is None
        assert store.session.session_start_time == NOW.isoformat()

    def test_expired_snapshot_signed_out_provider(self):
        expired = authenticated_snapshot(started=NOW - timedelta(hours=1, seconds=1))
        store = self.make_store(expired)

        async def scenario():
            await store.start()
            self.auth.emit(None)
            assert await store.wait_ready(timeout=1)
            await store.flush()

        asyncio.run(scenario())
        assert store.session == Session()
        assert SESSION_KEY not in self.storage.data

    def test_round_trip_same_user(self):
        """Persisted then loaded (before expiry) yields the same session"""
        snapshot = authenticated_snapshot()
        store = self.make_store(snapshot)

        async def scenario():
            await store.start()
            self.auth.emit('uid-1')
            assert await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session == snapshot

    def test_profile_revalidated_against_live_document(self):
        self.documents.docs[(USER_COLLECTION, 'uid-1')] = {'accountType': 2, 'active': 2}
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            await store.start()
            self.auth.emit('uid-1')
            await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session.account_type == 2
        assert store.session.active == 2
        assert store.session.current_location == BRISBANE

    def test_provider_signed_out_wins_over_snapshot(self):
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            await store.start()
            self.auth.emit(None)
            await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session.auth_state == UNAUTHENTICATED
        assert store.session.user_id is None
        assert store.session.expiry is None
        # Location is not auth state and survives
        assert store.session.current_location == BRISBANE

    def test_provider_different_user_wins_over_snapshot(self):
        store = self.make_store(authenticated_snapshot(user_id='uid-1'))

        async def scenario():
            await store.start()
            self.auth.emit('uid-2')
            await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session.user_id == 'uid-2'
        assert store.session.account_type == 3
        assert store.session.session_start_time == NOW.isoformat()
        assert store.session.expiry == (NOW + timedelta(hours=1)).isoformat()

    def test_auth_notification_before_load(self):
        """Reconciliation waits for the snapshot when the provider answers first"""
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            self.storage.hold_reads()
            await store.start()
            self.auth.emit('uid-1')
            assert await store.wait_ready(timeout=0.05) is False
            assert store.session == Session()
            self.storage.release_reads()
            assert await store.wait_ready(timeout=1) is True

        asyncio.run(scenario())
        assert store.session.user_id == 'uid-1'

    def test_load_before_auth_notification(self):
        """Reconciliation waits for the provider when the snapshot loads first"""
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            await store.start()
            await settle()
            assert store.session == Session()
            assert await store.wait_ready(timeout=0.05) is False
            self.auth.emit('uid-1')
            assert await store.wait_ready(timeout=1) is True

        asyncio.run(scenario())
        assert store.session.user_id == 'uid-1'

    def test_update_during_load_wins(self):
        """A write made before the snapshot arrives is newer than the snapshot"""
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            self.storage.hold_reads()
            await store.start()
            store.update(current_location=SYDNEY)
            self.auth.emit('uid-1')
            self.storage.release_reads()
            await store.wait_ready(timeout=1)
            await store.flush()

        asyncio.run(scenario())
        assert store.session.current_location == SYDNEY
        assert store.session.search_location == SYDNEY
        assert store.session.user_id == 'uid-1'

        # The snapshot was read before anything was written over it
        first_set = self.storage.calls.index(('set', SESSION_KEY))
        assert self.storage.calls.index(('get', SESSION_KEY)) < first_set

    def test_clear_during_load_discards_snapshot(self):
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            self.storage.hold_reads()
            await store.start()
            store.clear()
            self.auth.emit(None)
            self.storage.release_reads()
            await store.wait_ready(timeout=1)
            await store.flush()

        asyncio.run(scenario())
        assert store.session == Session()

    def test_logout_during_profile_read_stays_signed_out(self):
        """A failed provider sign-out still leaves the store signed out once reconciliation finishes"""
        store = self.make_store(authenticated_snapshot())
        self.auth.sign_out_error = auth_error('sign-out-failed', 'Logout failed. Please try again.')

        async def scenario():
            self.documents.hold_reads()
            await store.start()
            self.auth.emit('uid-1')
            await settle()

            with pytest.raises(AuthError):
                await store.logout()
            assert store.session == Session()

            self.documents.release_reads()
            assert await store.wait_ready(timeout=1)
            await store.flush()

        asyncio.run(scenario())
        assert not store.is_authenticated()
        assert store.session == Session()
        assert SESSION_KEY not in self.storage.data

    def test_update_after_clear_during_profile_read_kept(self):
        store = self.make_store(authenticated_snapshot())

        async def scenario():
            self.documents.hold_reads()
            await store.start()
            self.auth.emit('uid-1')
            await settle()

            store.clear()
            store.update(search_location=BRISBANE)

            self.documents.release_reads()
            assert await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session.auth_state == UNAUTHENTICATED
        assert store.session.current_location is None
        assert store.session.search_location == BRISBANE

        asyncio.run(scenario())
        assert store.session == Session()

    def test_storage_read_failure_treated_as_absent(self):
        store = self.make_store(authenticated_snapshot())
        self.storage.fail_get = True

        async def scenario():
            await store.start()
            self.auth.emit(None)
            await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session == Session()

    def test_corrupt_snapshot_treated_as_absent(self):
        store = self.make_store()
        self.storage.data[SESSION_KEY] = '{not json'

        async def scenario():
            await store.start()
            self.auth.emit(None)
            await store.wait_ready(timeout=1)

        asyncio.run(scenario())
        assert store.session == Session()


class TestProviderNotifications:
    """Test provider notifications after startup"""

    def setup_method(self):
        self.auth = FakeAuthProvider()
        self.documents = FakeDocumentStore({
            (USER_COLLECTION, 'uid-2'): {'accountType': 3, 'active': 1},
        })
        self.storage = MemoryStorage()
        self.store = SessionStore(self.storage, self.auth, self.documents, clock=lambda: NOW)

    def test_external_sign_out_clears_session(self):
        async def scenario():
            await self.store.start()
            self.auth.emit('uid-2')
            await self.store.wait_ready(timeout=1)
            assert self.store.is_authenticated()
            self.store.update(current_location=BRISBANE)

            self.auth.emit(None)
            await settle()
            await self.store.flush()

        asyncio.run(scenario())
        assert self.store.session == Session()

    def test_external_sign_in_folds_user(self):
        async def scenario():
            await self.store.start()
            self.auth.emit(None)
            await self.store.wait_ready(timeout=1)

            self.auth.emit('uid-2')
            await settle()

        asyncio.run(scenario())
        assert self.store.session.auth_state == AUTHENTICATED
        assert self.store.session.user_id == 'uid-2'
        assert self.store.session.account_type == 3

    def test_stale_notification_ignored(self):
        """A queued sign-in superseded by a sign-out does not authenticate"""
        async def scenario():
            await self.store.start()
            self.auth.emit(None)
            await self.store.wait_ready(timeout=1)

            self.auth.current_user_id = None
            self.store._on_auth_state_changed('uid-2')
            await settle()

        asyncio.run(scenario())
        assert self.store.is_authenticated() is False

    def test_login_after_start_does_not_double_fold(self):
        self.auth.next_uid = 'uid-2'

        async def scenario():
            await self.store.start()
            self.auth.emit(None)
            await self.store.wait_ready(timeout=1)

            seen = []
            self.store.subscribe(seen.append)
            await self.store.login('user@example.com', 'Secret123')
            await settle()
            return seen

        seen = asyncio.run(scenario())
        assert self.store.session.user_id == 'uid-2'
        assert len(seen) == 1

    def test_close_unsubscribes(self):
        async def scenario():
            await self.store.start()
            self.auth.emit(None)
            await self.store.wait_ready(timeout=1)
            await self.store.close()
            assert self.auth.listeners == []

        asyncio.run(scenario())
