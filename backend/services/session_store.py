"""
Session Store - single source of truth for authentication and last-known location.

Reconciles three views of the session:
- memory: the Session value screens read and update
- durable local storage: the JSON snapshot that survives restarts
- the authentication provider: live signed-in identity notifications

Startup ordering: the persisted snapshot and the provider's first
notification may arrive in either order. Neither is applied on its own;
once both are known a single reconciliation runs, and the provider's live
identity wins over a stale snapshot. Fields written with update() before
reconciliation win over the snapshot (last write wins).
"""
import asyncio
import json
import logging
from dataclasses import dataclass, fields as dataclass_fields, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from services.auth_service import AuthError
from services.device_location import LocationPermission
from utils.geo import LocationFix
from utils.secure_logging import hash_user_id, safe_log_dict

logger = logging.getLogger(__name__)

AUTHENTICATED = 'authenticated'
UNAUTHENTICATED = 'unauthenticated'

# Account tiers
ACCOUNT_STANDARD = 1
ACCOUNT_MODERATOR = 2
ACCOUNT_VERIFIED = 3
ACCOUNT_SUPER_ADMIN = 4

# Account status
ACTIVE_INACTIVE = 0
ACTIVE_ACTIVE = 1
ACTIVE_SUSPENDED = 2
ACTIVE_BANNED = 3

SESSION_KEY = 'userAppSession'
USER_COLLECTION = 'user'

AUTH_FIELDS = ('auth_state', 'user_id', 'account_type', 'active', 'session_start_time', 'expiry')


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Session:
    """Process-wide authentication and location state (immutable snapshot)"""
    auth_state: str = UNAUTHENTICATED
    user_id: Optional[str] = None
    account_type: Optional[int] = None
    active: Optional[int] = None
    current_location: Optional[LocationFix] = None
    search_location: Optional[LocationFix] = None
    location_permission: Optional[LocationPermission] = None
    session_start_time: Optional[str] = None
    expiry: Optional[str] = None

    def is_default(self) -> bool:
        return self == Session()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True if an expiry is set and has passed"""
        expiry = _parse_time(self.expiry)
        if expiry is None:
            return False
        return expiry <= (now or datetime.now(timezone.utc))

    def invariant_error(self) -> Optional[str]:
        """Describe the first violated session invariant, or None"""
        if self.auth_state not in (AUTHENTICATED, UNAUTHENTICATED):
            return f"Unknown auth_state: {self.auth_state!r}"

        if self.auth_state == AUTHENTICATED:
            start = _parse_time(self.session_start_time)
            expiry = _parse_time(self.expiry)
            if start is None or expiry is None:
                return "Authenticated session requires session_start_time and expiry"
            if expiry <= start:
                return "Session expiry must be after session_start_time"
        elif any(v is not None for v in (self.user_id, self.account_type, self.active)):
            return "Unauthenticated session cannot carry user_id, account_type or active"

        return None

    def to_dict(self) -> Dict:
        return {
            'auth_state': self.auth_state,
            'user_id': self.user_id,
            'account_type': self.account_type,
            'active': self.active,
            'current_location': self.current_location.to_dict() if self.current_location else None,
            'search_location': self.search_location.to_dict() if self.search_location else None,
            'location_permission': self.location_permission.to_dict() if self.location_permission else None,
            'session_start_time': self.session_start_time,
            'expiry': self.expiry,
        }

    @classmethod
    def from_dict(cls, data) -> 'Session':
        """
        Rebuild a session from stored data.

        Malformed fields fall back to their defaults; an authenticated
        snapshot that breaks the session invariants loses its auth fields.
        """
        if not isinstance(data, dict):
            return cls()

        auth_state = data.get('auth_state')
        session = cls(
            auth_state=auth_state if auth_state in (AUTHENTICATED, UNAUTHENTICATED) else UNAUTHENTICATED,
            user_id=data.get('user_id') if isinstance(data.get('user_id'), str) else None,
            account_type=_optional_int(data.get('account_type')),
            active=_optional_int(data.get('active')),
            current_location=LocationFix.from_dict(data.get('current_location')),
            search_location=LocationFix.from_dict(data.get('search_location'), source='search'),
            location_permission=LocationPermission.from_dict(data.get('location_permission')),
            session_start_time=data.get('session_start_time') if _parse_time(data.get('session_start_time')) else None,
            expiry=data.get('expiry') if _parse_time(data.get('expiry')) else None,
        )

        if session.invariant_error():
            logger.warning(f"Stored session failed integrity check: {session.invariant_error()}")
            session = replace(session, **{name: getattr(cls(), name) for name in AUTH_FIELDS})
        return session


SESSION_FIELDS = tuple(f.name for f in dataclass_fields(Session))

SessionObserver = Callable[[Session], None]


class SessionStore:
    """
    Owner of the Session value.

    Screens receive the store by reference and use `session` for reads and
    update()/clear() for writes; nothing else touches the persisted record.

    Usage:
        store = SessionStore(storage, auth, documents)
        await store.start()
        await store.wait_ready()
        await store.login('user@example.com', 'Secret123')
    """

    def __init__(self, storage, auth, documents, session_ttl: int = 3600,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            storage: LocalStorage for the persisted snapshot
            auth: Authentication provider (FirebaseAuthService)
            documents: DocumentStore holding user profiles
            session_ttl: Seconds from login until the session expires
            clock: Returns the current aware datetime (for tests)
        """
        self.storage = storage
        self.auth = auth
        self.documents = documents
        self.session_ttl = session_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._session = Session()
        self._observers: List[SessionObserver] = []

        # Persistence: one writer task drains pending changes in order
        self._persist_pending = False
        self._persist_task: Optional[asyncio.Task] = None
        self._persist_gate: Optional[asyncio.Event] = None

        # Startup reconciliation state
        self._reconciled = False
        self._snapshot: Optional[Session] = None
        self._snapshot_known = False
        self._first_auth_known = False
        self._live_uid: Optional[str] = None
        self._local_writes: Set[str] = set()
        self._cleared_before_load = False
        self._clear_count = 0
        self._ready = asyncio.Event()

        self._auth_lock = asyncio.Lock()
        self._local_auth_pending = 0
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin loading the persisted snapshot and listening to the auth provider"""
        self._persist_gate = asyncio.Event()
        self._unsubscribe_auth = self.auth.on_state_change(self._on_auth_state_changed)
        self._spawn(self._load_snapshot())

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until startup reconciliation has run.

        Returns:
            True if reconciled, False if the timeout elapsed first
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def close(self) -> None:
        """Stop listening to the provider and flush pending writes"""
        if self._unsubscribe_auth:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        await self.flush()

    async def flush(self) -> None:
        """Wait until every change so far has been written to local storage"""
        if self._persist_pending and (self._persist_task is None or self._persist_task.done()):
            self._persist_task = asyncio.get_running_loop().create_task(self._persist_loop())
        if self._persist_task is not None:
            await self._persist_task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_authenticated(self) -> bool:
        return self._session.auth_state == AUTHENTICATED

    def is_session_valid(self, now: Optional[datetime] = None) -> bool:
        """Authenticated, active account, and not yet expired"""
        session = self._session
        return (
            session.auth_state == AUTHENTICATED
            and session.active == ACTIVE_ACTIVE
            and not session.is_expired(now or self._clock())
        )

    def subscribe(self, callback: SessionObserver) -> Callable[[], None]:
        """
        Observe session changes.

        Returns:
            Function that removes the observer
        """
        self._observers.append(callback)

        def unsubscribe():
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update(self, partial: Optional[Dict] = None, **fields) -> None:
        """
        Shallow-merge fields into the session and persist in the background.

        The merged session is validated against the session invariants
        (an authenticated session has a start before its expiry; a signed-out
        session carries no user_id, account_type or active) before it replaces
        the current one. A rejected merge leaves the session unchanged.

        Args:
            partial: Field dict (Session field names)
            **fields: Fields given as keyword arguments

        Raises:
            ValueError: On unknown field names or a merge that breaks the
                        session invariants (programming errors)
        """
        merged = dict(partial or {})
        merged.update(fields)
        self._merge(merged, local=True)

    def clear(self) -> None:
        """Reset the session to defaults and delete the persisted record"""
        logger.info("Clearing session")
        self._clear_count += 1
        if not self._reconciled:
            self._cleared_before_load = True
            self._local_writes.clear()
        self._session = Session()
        self._changed()

    def check_expiry(self) -> bool:
        """Clear the session if its expiry has passed; True if it was cleared"""
        if self._session.auth_state == AUTHENTICATED and self._session.is_expired(self._clock()):
            logger.info(f"Session expired at {self._session.expiry}. Clearing session.")
            self.clear()
            return True
        return False

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> Session:
        """
        Sign in and fold the user's profile into the session.

        Raises:
            AuthError: Provider rejected the login, or the account is inactive.
                       The session is left unchanged.
        """
        self._local_auth_pending += 1
        try:
            user = await self.auth.sign_in(email, password)
            account_type, active = await self._fetch_profile(user.user_id)

            if active == ACTIVE_INACTIVE:
                logger.info(f"Login refused for inactive account {hash_user_id(user.user_id)}")
                try:
                    await self.auth.sign_out()
                except Exception as e:
                    logger.error(f"Sign-out after inactive login failed: {e}")
                raise AuthError('account-inactive', 'Your account is inactive. Please contact support.')

            self._fold_authenticated(user.user_id, account_type, active)
        finally:
            self._local_auth_pending -= 1

        return self._session

    async def sign_up(self, email: str, password: str) -> Session:
        """
        Create an account, write its default profile and fold it into the session.

        Raises:
            AuthError: Provider refused the account. The session is left unchanged.
        """
        self._local_auth_pending += 1
        try:
            user = await self.auth.sign_up(email, password)

            profile = {
                'accountType': ACCOUNT_STANDARD,
                'active': ACTIVE_ACTIVE,
                'createdAt': self._clock().isoformat(),
            }
            try:
                await self.documents.set_doc(USER_COLLECTION, user.user_id, profile)
            except Exception as e:
                logger.error(f"Failed to write profile for new user {hash_user_id(user.user_id)}: {e}")

            self._fold_authenticated(user.user_id, ACCOUNT_STANDARD, ACTIVE_ACTIVE)
        finally:
            self._local_auth_pending -= 1

        return self._session

    async def logout(self) -> None:
        """
        Sign out and clear the session.

        The session is cleared even when the provider sign-out fails; that
        failure is re-raised afterwards so the screen can report it.

        Raises:
            AuthError: Provider sign-out failed
        """
        error = None
        try:
            await self.auth.sign_out()
        except Exception as e:
            logger.error(f"Error signing out: {e}")
            error = e if isinstance(e, AuthError) else AuthError('sign-out-failed', 'Logout failed. Please try again.')

        self.clear()
        if error is not None:
            raise error

    async def refresh_profile(self) -> None:
        """Re-read accountType/active for the signed-in user"""
        session = self._session
        if session.auth_state != AUTHENTICATED or not session.user_id:
            return
        account_type, active = await self._fetch_profile(
            session.user_id, fallback=(session.account_type, session.active)
        )
        if self._session.user_id == session.user_id:
            self._merge({'account_type': account_type, 'active': active}, local=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _coerce(self, name: str, value):
        if name in ('current_location', 'search_location') and isinstance(value, dict):
            fix = LocationFix.from_dict(value, source='search' if name == 'search_location' else 'cache')
            if fix is None:
                raise ValueError(f"Invalid location for {name}: {value!r}")
            return fix
        if name == 'location_permission' and isinstance(value, dict):
            permission = LocationPermission.from_dict(value)
            if permission is None:
                raise ValueError(f"Invalid location permission: {value!r}")
            return permission
        return value

    def _merge(self, changes: Dict, local: bool) -> None:
        unknown = set(changes) - set(SESSION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        coerced = {name: self._coerce(name, value) for name, value in changes.items()}
        updated = replace(self._session, **coerced)

        error = updated.invariant_error()
        if error:
            raise ValueError(error)

        self._session = updated
        if local and not self._reconciled:
            self._local_writes.update(coerced)
        logger.debug(f"Session updated: {safe_log_dict(updated.to_dict())}")
        self._changed()

    def _fold_authenticated(self, user_id: str, account_type: Optional[int], active: Optional[int]) -> None:
        start = self._clock()
        self._merge({
            'auth_state': AUTHENTICATED,
            'user_id': user_id,
            'account_type': account_type,
            'active': active,
            'session_start_time': start.isoformat(),
            'expiry': (start + timedelta(seconds=self.session_ttl)).isoformat(),
        }, local=True)
        logger.info(f"Session authenticated for user {hash_user_id(user_id)}")

    async def _fetch_profile(self, user_id: str,
                             fallback: Tuple[Optional[int], Optional[int]] = (None, None)
                             ) -> Tuple[Optional[int], Optional[int]]:
        """(account_type, active) from the user's profile; fallback if unreadable"""
        try:
            doc = await self.documents.get_doc(USER_COLLECTION, user_id)
        except Exception as e:
            logger.error(f"Failed to read profile for user {hash_user_id(user_id)}: {e}")
            return fallback

        if doc is None:
            logger.warning(f"No profile document for user {hash_user_id(user_id)}")
            return None, None

        return _optional_int(doc.get('accountType')), _optional_int(doc.get('active'))

    def _changed(self) -> None:
        snapshot = self._session
        for callback in list(self._observers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Session observer failed: {e}", exc_info=True)
        self._schedule_persist()

    def _schedule_persist(self) -> None:
        self._persist_pending = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; session write deferred until flush()")
            return
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = loop.create_task(self._persist_loop())

    async def _persist_loop(self) -> None:
        # Never overwrite the stored snapshot before reconciliation has read it
        if self._persist_gate is not None:
            await self._persist_gate.wait()

        while self._persist_pending:
            self._persist_pending = False
            snapshot = self._session
            try:
                if snapshot.is_default():
                    await self.storage.remove(SESSION_KEY)
                    logger.debug("Default session; removed cached session")
                else:
                    await self.storage.set(SESSION_KEY, json.dumps(snapshot.to_dict()))
                    logger.debug("Session saved to cache")
            except Exception as e:
                logger.error(f"Failed to save session to cache: {e}")

    async def _load_snapshot(self) -> None:
        snapshot = None
        try:
            raw = await self.storage.get(SESSION_KEY)
            if raw:
                snapshot = Session.from_dict(json.loads(raw))
        except Exception as e:
            logger.error(f"Failed to load session from cache: {e}")

        if snapshot is not None and snapshot.is_expired(self._clock()):
            logger.info(f"Session expired at {snapshot.expiry}. Clearing session.")
            snapshot = None

        async with self._auth_lock:
            self._snapshot = snapshot
            self._snapshot_known = True
            await self._maybe_reconcile()

    def _on_auth_state_changed(self, user_id: Optional[str]) -> None:
        self._spawn(self._handle_auth_state(user_id))

    async def _handle_auth_state(self, user_id: Optional[str]) -> None:
        async with self._auth_lock:
            if not self._reconciled:
                self._first_auth_known = True
                self._live_uid = user_id
                await self._maybe_reconcile()
                return

            if self._local_auth_pending:
                logger.debug("Auth notification during local login/sign-up ignored")
                return

            # Notification superseded by a later identity change
            if user_id != self.auth.current_user_id:
                return

            if user_id is None:
                if self._session.auth_state == AUTHENTICATED:
                    logger.info("Signed out by authentication provider")
                    self.clear()
                return

            if self._session.auth_state == AUTHENTICATED and self._session.user_id == user_id:
                return

            account_type, active = await self._fetch_profile(user_id)
            logger.info(f"Signed in by authentication provider: {hash_user_id(user_id)}")
            self._fold_authenticated(user_id, account_type, active)

    async def _maybe_reconcile(self) -> None:
        """Apply snapshot + live identity once both are known (auth lock held)"""
        if self._reconciled or not (self._snapshot_known and self._first_auth_known):
            return

        clears = self._clear_count
        snapshot = None if self._cleared_before_load else self._snapshot
        base = snapshot or Session()
        live_uid = self._live_uid

        if live_uid is None:
            if base.auth_state == AUTHENTICATED:
                logger.info("Persisted login not confirmed by provider; keeping location only")
            result = replace(base, **{name: getattr(Session(), name) for name in AUTH_FIELDS})
        elif base.auth_state == AUTHENTICATED and base.user_id == live_uid:
            account_type, active = await self._fetch_profile(
                live_uid, fallback=(base.account_type, base.active)
            )
            result = replace(base, account_type=account_type, active=active)
        else:
            account_type, active = await self._fetch_profile(live_uid)
            start = self._clock()
            result = replace(
                base,
                auth_state=AUTHENTICATED,
                user_id=live_uid,
                account_type=account_type,
                active=active,
                session_start_time=start.isoformat(),
                expiry=(start + timedelta(seconds=self.session_ttl)).isoformat(),
            )

        if self._clear_count != clears:
            # clear() ran during the profile read; only later writes survive
            logger.info("Session cleared while reconciling; discarding persisted state")
            result = Session()

        # Writes made while loading are newer than the snapshot
        overlay = {name: getattr(self._session, name) for name in self._local_writes}
        final = replace(result, **overlay)
        if final.invariant_error():
            non_auth = {k: v for k, v in overlay.items() if k not in AUTH_FIELDS}
            final = replace(result, **non_auth)

        self._session = final
        self._reconciled = True
        self._snapshot = None
        self._local_writes.clear()
        self._ready.set()
        if self._persist_gate is not None:
            self._persist_gate.set()
        logger.info(f"Session reconciled: {final.auth_state} (user {hash_user_id(final.user_id)})")
        self._changed()
