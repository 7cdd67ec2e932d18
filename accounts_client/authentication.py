"""
Local authentication: sign up, log in, second factor, password reset.

A login that needs a second factor leaves a :class:`.TempAuthChallenge`
behind. Verification attempts count down against it; when they run out the
engine refuses further attempts, without contacting the server, until the
lockout period has passed.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

import jwt
from pytz import UTC

from .domain import AuthState, LoginResult, TempAuthChallenge, \
    TwoFactorSetup
from .exceptions import AuthenticationFailed, TransportError, \
    TwoFactorLockedOut, TwoFactorSessionExpired, \
    TwoFactorVerificationFailed, ValidationError
from .services.api import AuthApi
from .sessions import SessionSynchronizer
from .store import AccountStore

logger = logging.getLogger(__name__)

INVALID_CODE = 'invalid_code'
EXPIRED_SESSION = 'expired_session'
MALFORMED_REQUEST = 'malformed_request'
GENERIC = 'generic'

TOTP_CODE = re.compile(r'^\d{6}$')

_EXPIRED_CODES = {'TOKEN_EXPIRED', 'SESSION_EXPIRED', 'TEMP_TOKEN_EXPIRED'}
_INVALID_CODES = {'INVALID_TOKEN', 'INVALID_CODE', 'AUTH_FAILED',
                  'INVALID_CREDENTIALS'}
_MALFORMED_CODES = {'VALIDATION_ERROR', 'BAD_REQUEST', 'MISSING_DATA',
                    'INVALID_REQUEST'}
_TRANSPORT_CODES = {'NETWORK_ERROR', 'TIMEOUT_ERROR'}


def classify_two_factor_error(error: TransportError) -> str:
    """Sort a failed verification into one of four kinds.

    Returns
    -------
    str
        ``invalid_code``, ``expired_session``, ``malformed_request`` or
        ``generic``.
    """
    code = (error.code or '').upper()
    message = (error.message or '').lower()
    if code in _TRANSPORT_CODES:
        return GENERIC
    if code in _EXPIRED_CODES or 'expired' in message:
        return EXPIRED_SESSION
    if code in _INVALID_CODES or 'invalid' in message \
            or 'incorrect' in message:
        return INVALID_CODE
    if code in _MALFORMED_CODES or error.status_code in (400, 422):
        return MALFORMED_REQUEST
    return GENERIC


def token_expiry(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim of a JWT without verifying it.

    Returns ``None`` for opaque tokens and tokens with no expiry.
    """
    try:
        claims = jwt.decode(token, options={'verify_signature': False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get('exp')
    if exp is None:
        return None
    return datetime.fromtimestamp(int(exp), tz=UTC)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class AuthenticationEngine:
    """Drives local authentication to completion.

    Parameters
    ----------
    api : :class:`.AuthApi`
    sessions : :class:`.SessionSynchronizer`
        Notified when an account becomes authenticated.
    store : :class:`.AccountStore`
    max_attempts : int
        Second-factor attempts allowed per challenge.
    lockout_ms : int
        How long verification stays locked once attempts run out.
    clock : callable
        Returns the current UTC time; for tests.
    """

    def __init__(self, api: AuthApi, sessions: SessionSynchronizer,
                 store: AccountStore, max_attempts: int = 5,
                 lockout_ms: int = 300000,
                 clock: Callable[[], datetime] = _now) -> None:
        self._api = api
        self._sessions = sessions
        self._store = store
        self.max_attempts = max_attempts
        self.lockout = timedelta(milliseconds=lockout_ms)
        self._clock = clock
        self.state = AuthState.IDLE
        self.error: Optional[str] = None
        self.challenge: Optional[TempAuthChallenge] = None
        self._unlock_handle: Optional[asyncio.TimerHandle] = None
        self._disposed = False

    def _set(self, state: AuthState, error: Optional[str] = None) -> None:
        logger.debug('Authentication state %s -> %s', self.state.value,
                     state.value)
        self.state = state
        self.error = error

    def _cancel_unlock(self) -> None:
        if self._unlock_handle is not None:
            self._unlock_handle.cancel()
            self._unlock_handle = None

    # Login.

    async def login(self, credentials: Mapping[str, Any]) -> LoginResult:
        """Log in with an email or username and a password.

        Any unfinished second-factor challenge is discarded first.

        Returns
        -------
        :class:`.LoginResult`
            If ``requires_two_factor`` is set, a challenge is now pending
            and the session has not changed.

        Raises
        ------
        :class:`.ValidationError`
        :class:`.AuthenticationFailed`
        """
        self._cancel_unlock()
        self.challenge = None
        self._set(AuthState.AUTHENTICATING)
        try:
            result = await self._api.login(credentials)
        except ValidationError as e:
            self._set(AuthState.FAILED, str(e))
            raise
        except TransportError as e:
            if not self._disposed:
                self._set(AuthState.FAILED, e.message)
            raise AuthenticationFailed(e.message, e.field_errors) from e
        if self._disposed:
            return result

        if result.requires_two_factor:
            if not result.temp_token:
                self._set(AuthState.FAILED, 'Missing two-factor token')
                raise AuthenticationFailed('Missing two-factor token')
            self.begin_challenge(result.temp_token, result.account_id)
            return result

        if not result.account_id:
            self._set(AuthState.FAILED, 'Login returned no account')
            raise AuthenticationFailed('Login returned no account')
        await self._complete(result.account_id)
        return result

    async def _complete(self, account_id: str) -> None:
        try:
            await self._sessions.adopt(account_id)
        except Exception as e:
            if not self._disposed:
                self._set(AuthState.FAILED, str(e))
            raise
        if not self._disposed:
            logger.info('Account %s authenticated', account_id)
            self._set(AuthState.SUCCESS)

    # Second factor.

    def begin_challenge(self, temp_token: str,
                        account_id: Optional[str] = None) -> TempAuthChallenge:
        """Start a second-factor challenge, replacing any other."""
        self._cancel_unlock()
        self.challenge = TempAuthChallenge(
            temp_token=temp_token,
            issued_for_account_id=account_id,
            attempts_remaining=self.max_attempts,
            max_attempts=self.max_attempts,
            expires_at=token_expiry(temp_token)
        )
        self._set(AuthState.REQUIRES_TWO_FACTOR)
        return self.challenge

    async def verify_two_factor(self, code: str,
                                is_backup_code: bool = False) -> LoginResult:
        """Answer the pending second-factor challenge.

        Raises
        ------
        :class:`.TwoFactorSessionExpired`
            If there is no challenge, or the server says it has expired.
            The challenge is gone afterwards.
        :class:`.TwoFactorLockedOut`
            If attempts have run out. Raised without contacting the server
            while the lockout lasts.
        :class:`.TwoFactorVerificationFailed`
            If the code was not accepted; one attempt has been used.
        :class:`.ValidationError`
            If the code is empty or not six digits. No attempt is used.
        """
        challenge = self.challenge
        now = self._clock()
        if challenge is None:
            self._set(AuthState.EXPIRED_SESSION,
                      'Session expired. Please sign in again.')
            raise TwoFactorSessionExpired('No two-factor challenge pending')
        if challenge.is_locked(now):
            remaining = (challenge.locked_until - now).total_seconds()
            raise TwoFactorLockedOut(
                'Too many failed attempts. Try again later.', remaining)
        if challenge.is_expired(now):
            self.challenge = None
            self._set(AuthState.EXPIRED_SESSION,
                      'Session expired. Please sign in again.')
            raise TwoFactorSessionExpired('Two-factor challenge has expired')

        code = (code or '').strip()
        if not code:
            raise ValidationError('Verification code is required', 'code')
        if not is_backup_code and not TOTP_CODE.match(code):
            raise ValidationError('Verification code must be 6 digits',
                                  'code')

        self._set(AuthState.AUTHENTICATING)
        try:
            result = await self._api.verify_two_factor(code,
                                                       challenge.temp_token)
        except TransportError as e:
            if self._disposed or self.challenge is not challenge:
                raise
            raise self._verification_failure(
                challenge, e, is_backup_code) from e
        if self._disposed or self.challenge is not challenge:
            return result

        account_id = result.account_id or challenge.issued_for_account_id
        if not account_id:
            self._set(AuthState.FAILED, 'Verification returned no account')
            raise AuthenticationFailed('Verification returned no account')
        self.challenge = None
        await self._complete(account_id)
        return result

    def _verification_failure(self, challenge: TempAuthChallenge,
                              error: TransportError,
                              is_backup_code: bool) -> RuntimeError:
        """Record a failed attempt and return the exception to raise."""
        kind = classify_two_factor_error(error)
        if kind == EXPIRED_SESSION:
            self.challenge = None
            message = 'Session expired. Please sign in again.'
            self._set(AuthState.EXPIRED_SESSION, message)
            return TwoFactorSessionExpired(message)

        remaining = challenge.attempts_remaining - 1
        if remaining <= 0:
            self._lock(challenge)
            return TwoFactorLockedOut(
                'Too many failed attempts. Try again later.',
                self.lockout.total_seconds()
            )

        self.challenge = challenge.model_copy(
            update={'attempts_remaining': remaining})
        if kind == INVALID_CODE:
            message = 'Invalid backup code' if is_backup_code \
                else 'Invalid verification code'
            message = f'{message}. {remaining} attempts remaining.'
            self._set(AuthState.INVALID_TOKEN, message)
        else:
            message = error.message
            self._set(AuthState.FAILED, message)
        return TwoFactorVerificationFailed(message, kind, remaining)

    def _lock(self, challenge: TempAuthChallenge) -> None:
        self.challenge = challenge.model_copy(update={
            'attempts_remaining': 0,
            'locked_until': self._clock() + self.lockout
        })
        self._set(AuthState.LOCKED_OUT,
                  'Too many failed attempts. Try again later.')
        logger.info('Two-factor verification locked for %s seconds',
                    self.lockout.total_seconds())
        self._cancel_unlock()
        loop = asyncio.get_running_loop()
        self._unlock_handle = loop.call_later(self.lockout.total_seconds(),
                                              self._unlock)

    def _unlock(self) -> None:
        self._unlock_handle = None
        if self._disposed:
            return
        if self.challenge is not None:
            self.challenge = self.challenge.model_copy(update={
                'attempts_remaining': self.max_attempts,
                'locked_until': None
            })
        self._set(AuthState.IDLE)

    def cancel_two_factor(self) -> None:
        """Abandon the pending challenge."""
        self.reset()

    def reset(self) -> None:
        self._cancel_unlock()
        self.challenge = None
        self._set(AuthState.IDLE)

    def dispose(self) -> None:
        """Stop the lockout timer; results that arrive later are ignored."""
        self.reset()
        self._disposed = True

    # Stateless requests.

    async def signup(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Create a local account. The session is not changed."""
        return await self._call(self._api.signup(data))

    async def verify_email(self, token: str) -> Dict[str, Any]:
        return await self._call(self._api.verify_email(token))

    async def request_password_reset(self, email: str) -> Dict[str, Any]:
        return await self._call(self._api.request_password_reset(email))

    async def reset_password(self, token: str, password: str,
                             confirm_password: str) -> Dict[str, Any]:
        return await self._call(
            self._api.reset_password(token, password, confirm_password))

    async def change_password(self, account_id: str, old_password: str,
                              new_password: str,
                              confirm_password: str) -> Dict[str, Any]:
        return await self._call(self._api.change_password(
            account_id, old_password, new_password, confirm_password))

    async def setup_two_factor(self, account_id: str, password: str,
                               enable: bool = True) -> TwoFactorSetup:
        """Begin enabling, or disable, two-factor for an account.

        Enabling only takes effect once :meth:`verify_two_factor_setup`
        succeeds.
        """
        setup = await self._call(
            self._api.setup_two_factor(account_id, password, enable))
        if not enable:
            self._store.update(account_id, {
                'security': {'two_factor_enabled': False,
                             'backup_codes_count': 0}
            })
        return setup

    async def verify_two_factor_setup(self, account_id: str,
                                      token: str) -> Dict[str, Any]:
        result = await self._call(
            self._api.verify_two_factor_setup(account_id, token))
        self._store.update(account_id,
                           {'security': {'two_factor_enabled': True}})
        return result

    async def generate_backup_codes(self, account_id: str,
                                    password: str) -> TwoFactorSetup:
        setup = await self._call(
            self._api.generate_backup_codes(account_id, password))
        if setup.backup_codes is not None:
            self._store.update(account_id, {
                'security': {'backup_codes_count': len(setup.backup_codes)}
            })
        return setup

    async def _call(self, request: Any) -> Any:
        try:
            return await request
        except TransportError as e:
            logger.info('Request failed: %s %s', e.code, e.message)
            raise AuthenticationFailed(e.message, e.field_errors) from e
