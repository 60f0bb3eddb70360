"""
Firebase Authentication Service
Email/password sign-in, sign-up and sign-out against the Firebase Auth REST API,
plus signed-in identity change notifications for the session store.
"""
import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import requests

from utils.secure_logging import redact_pii, hash_user_id
from utils.validators import CredentialValidator

logger = logging.getLogger(__name__)

# Firebase REST error codes -> messages shown on the login screen
FIREBASE_ERROR_MESSAGES = {
    'EMAIL_EXISTS': 'Email already in use',
    'EMAIL_NOT_FOUND': 'Invalid email or password',
    'INVALID_PASSWORD': 'Invalid email or password',
    'INVALID_LOGIN_CREDENTIALS': 'Invalid email or password',
    'INVALID_EMAIL': 'Please enter a valid email address',
    'USER_DISABLED': 'This account has been disabled',
    'TOO_MANY_ATTEMPTS_TRY_LATER': 'Too many attempts. Please try again later',
    'WEAK_PASSWORD': 'Password should be at least 6 characters',
    'OPERATION_NOT_ALLOWED': 'Email/password sign-in is disabled for this project',
    'TOKEN_EXPIRED': 'Your login has expired. Please log in again',
    'INVALID_REFRESH_TOKEN': 'Your login has expired. Please log in again',
    'USER_NOT_FOUND': 'Account no longer exists',
}

# Refresh failures that mean the stored credential is dead
_FATAL_REFRESH_CODES = {'TOKEN_EXPIRED', 'INVALID_REFRESH_TOKEN', 'USER_DISABLED', 'USER_NOT_FOUND'}


class AuthError(ValueError):
    """Authentication failure carrying a provider code and a human-readable message"""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class AuthUser:
    """Signed-in Firebase identity"""
    user_id: str
    email: Optional[str]
    id_token: str
    refresh_token: str
    expires_at: str


StateCallback = Callable[[Optional[str]], None]


class FirebaseAuthService:
    """
    Firebase Authentication integration for the client app.

    Usage:
        auth = FirebaseAuthService(api_key, storage)
        auth.on_state_change(lambda uid: print(uid))
        await auth.restore()          # fires the first notification
        user = await auth.sign_in('user@example.com', 'Secret123')
    """

    IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
    SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
    STORAGE_KEY = 'authUser'

    def __init__(self, api_key: str, storage, timeout: float = 10):
        """
        Args:
            api_key: Firebase web API key
            storage: LocalStorage used to keep the signed-in user across restarts
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key
        self.storage = storage
        self.timeout = timeout
        self.current_user: Optional[AuthUser] = None
        self._listeners: List[StateCallback] = []
        self._initialized = False

    @property
    def current_user_id(self) -> Optional[str]:
        return self.current_user.user_id if self.current_user else None

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """
        Register a callback fired with the signed-in uid (or None).

        Like the Firebase SDK, the callback is always invoked asynchronously:
        once with the current identity as soon as it is known, then on
        every identity change.

        Returns:
            Function that unregisters the callback
        """
        self._listeners.append(callback)
        if self._initialized:
            asyncio.get_running_loop().call_soon(callback, self.current_user_id)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def restore(self) -> Optional[AuthUser]:
        """
        Restore the persisted user and refresh its ID token.

        A network failure keeps the stored identity (offline start); a
        rejected refresh token signs the user out.
        """
        user = None
        try:
            raw = await self.storage.get(self.STORAGE_KEY)
            if raw:
                user = AuthUser(**json.loads(raw))
        except Exception as e:
            logger.error(f"Failed to restore user session: {e}")

        if user:
            try:
                user = await self._refresh(user)
                await self._save_user(user)
            except AuthError as e:
                if e.code in _FATAL_REFRESH_CODES:
                    logger.info(f"Stored login for user {hash_user_id(user.user_id)} rejected: {e.code}")
                    user = None
                    await self._forget_user()
                else:
                    logger.warning(f"Token refresh failed ({e.code}); keeping stored login")

        self.current_user = user
        self._initialized = True
        self._notify()
        return user

    async def sign_in(self, email: str, password: str) -> AuthUser:
        """
        Sign in with email and password

        Raises:
            AuthError: If input is invalid or Firebase rejects the credentials
        """
        email_valid, email_error = CredentialValidator.validate_email(email)
        if not email_valid:
            raise AuthError('invalid-email', email_error)
        if not password:
            raise AuthError('missing-password', 'Password is required')

        data = await self._post(
            f"{self.IDENTITY_TOOLKIT_URL}/accounts:signInWithPassword",
            {'email': email, 'password': password, 'returnSecureToken': True}
        )
        user = self._user_from_response(data)
        logger.info(redact_pii(f"User signed in: {email} (UID: {hash_user_id(user.user_id)})"))

        await self._save_user(user)
        self._set_current_user(user)
        return user

    async def sign_up(self, email: str, password: str) -> AuthUser:
        """
        Create an email/password account and sign it in

        Raises:
            AuthError: If validation fails or Firebase refuses the account
        """
        email_valid, email_error = CredentialValidator.validate_email(email)
        if not email_valid:
            raise AuthError('invalid-email', email_error)

        password_valid, password_error = CredentialValidator.validate_password(password)
        if not password_valid:
            raise AuthError('weak-password', password_error)

        data = await self._post(
            f"{self.IDENTITY_TOOLKIT_URL}/accounts:signUp",
            {'email': email, 'password': password, 'returnSecureToken': True}
        )
        user = self._user_from_response(data)
        logger.info(redact_pii(f"User created: {email} (UID: {hash_user_id(user.user_id)})"))

        await self._save_user(user)
        self._set_current_user(user)
        return user

    async def sign_out(self) -> None:
        """
        Sign out the current user and forget the stored login

        Raises:
            AuthError: If the stored login could not be removed
        """
        try:
            await self.storage.remove(self.STORAGE_KEY)
        except Exception as e:
            logger.error(f"Sign-out error: {e}")
            raise AuthError('sign-out-failed', 'Logout failed. Please try again.')

        self._set_current_user(None)
        logger.info("User signed out")

    def _set_current_user(self, user: Optional[AuthUser]) -> None:
        previous = self.current_user_id
        self.current_user = user
        if previous != self.current_user_id:
            self._notify()

    def _notify(self) -> None:
        loop = asyncio.get_running_loop()
        uid = self.current_user_id
        for callback in list(self._listeners):
            loop.call_soon(callback, uid)

    async def _refresh(self, user: AuthUser) -> AuthUser:
        data = await self._post(
            self.SECURE_TOKEN_URL,
            {'grant_type': 'refresh_token', 'refresh_token': user.refresh_token},
        )
        return AuthUser(
            user_id=data.get('user_id', user.user_id),
            email=user.email,
            id_token=data['id_token'],
            refresh_token=data.get('refresh_token', user.refresh_token),
            expires_at=self._expires_at(data.get('expires_in')),
        )

    async def _save_user(self, user: AuthUser) -> None:
        try:
            await self.storage.set(self.STORAGE_KEY, json.dumps(asdict(user)))
        except Exception as e:
            logger.error(f"Failed to save user session: {e}")

    async def _forget_user(self) -> None:
        try:
            await self.storage.remove(self.STORAGE_KEY)
        except Exception as e:
            logger.error(f"Failed to clear auth state: {e}")

    async def _post(self, url: str, payload: Dict) -> Dict:
        """POST to a Firebase Auth endpoint, mapping every failure to AuthError"""
        try:
            response = await asyncio.to_thread(
                requests.post,
                url,
                params={'key': self.api_key},
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Firebase Auth request failed: {e}")
            raise AuthError('network-request-failed', 'Unable to reach the authentication service')

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200:
            raw_code = (data.get('error') or {}).get('message', f'HTTP_{response.status_code}')
            # e.g. "WEAK_PASSWORD : Password should be at least 6 characters"
            code = raw_code.split(' : ')[0].strip()
            message = FIREBASE_ERROR_MESSAGES.get(code, 'An unexpected error occurred. Please try again.')
            logger.warning(f"Firebase Auth error: {code}")
            raise AuthError(code, message)

        return data

    def _user_from_response(self, data: Dict) -> AuthUser:
        try:
            return AuthUser(
                user_id=data['localId'],
                email=data.get('email'),
                id_token=data['idToken'],
                refresh_token=data['refreshToken'],
                expires_at=self._expires_at(data.get('expiresIn')),
            )
        except KeyError as e:
            raise AuthError('invalid-response', f'Malformed authentication response (missing {e})')

    @staticmethod
    def _expires_at(expires_in) -> str:
        try:
            seconds = int(expires_in)
        except (TypeError, ValueError):
            seconds = 3600
        return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()
