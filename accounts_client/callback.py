"""
Continuation across a redirect round trip.

Before an OAuth redirect nothing is kept in memory: the intent travels as a
query parameter and the server sends the user back with an outcome ``code``
and its payload on the callback URL. :func:`parse_callback` turns that query
string back into :class:`.CallbackData`; :class:`CallbackDispatcher` acts on
it and then strips the query from the location, whether or not handling
succeeded, so a reload never replays a callback.
"""

import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .accounts import AccountService
from .authentication import AuthenticationEngine
from .domain import AccountType, CallbackCode, CallbackData, \
    ContinuationResult, OAuthIntent, SessionAccountSummary
from .exceptions import RetryCooldown, RetryLimitExceeded, RetryRejected, \
    TransportError, ValidationError
from .lifecycle import AccountLifecycle
from .navigation import Navigator, good_next_page, query_string, strip_query
from .services.api import AuthApi
from .sessions import SessionSynchronizer
from .store import AccountStore

logger = logging.getLogger(__name__)

_LIST_FIELDS = ('accountIds', 'account_ids', 'accounts')
_FLAG_FIELDS = ('clearClientAccountState', 'clear_client_account_state')

ERROR_MESSAGES = {
    CallbackCode.OAUTH_ERROR: 'OAuth authentication failed',
    CallbackCode.LOCAL_AUTH_ERROR: 'Authentication failed',
    CallbackCode.PERMISSION_ERROR: 'Permission request failed',
    CallbackCode.INVALID_STATE: 'Invalid authentication state',
    CallbackCode.USER_NOT_FOUND: 'Account not found',
    CallbackCode.USER_EXISTS: 'An account with these details already exists',
    CallbackCode.TOKEN_EXPIRED: 'The link or token has expired',
}


def parse_callback(query: str) -> Optional[CallbackData]:
    """Decode a continuation query string.

    ``query`` may be a bare query string, one starting with ``?``, or a
    whole URL. Values are percent-decoded, ``accountIds`` and ``accounts``
    are split on commas and ``clearClientAccountState`` is true only for the
    literal ``"true"``.

    Returns
    -------
    :class:`.CallbackData` or None
        ``None`` if there is no ``code`` parameter, i.e. nothing to do.
    """
    if '://' in query:
        query = urlsplit(query).query
    query = query.lstrip('?')
    fields: Dict[str, Any] = dict(parse_qsl(query, keep_blank_values=True))
    code = fields.pop('code', '').strip()
    if not code:
        return None
    for name in _LIST_FIELDS:
        if name in fields:
            fields[name] = [v.strip() for v in fields[name].split(',')
                            if v.strip()]
    for name in _FLAG_FIELDS:
        if name in fields:
            fields[name] = fields[name] == 'true'
    return CallbackData.model_validate({'code': code, **fields})


def with_query(url: str, **params: str) -> str:
    """Add parameters to a URL's query string."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path,
                       urlencode(query), parts.fragment))


class OAuthContinuation:
    """Sends the user to an OAuth provider."""

    def __init__(self, api: AuthApi, navigator: Navigator,
                 callback_url: str) -> None:
        self._api = api
        self.navigator = navigator
        self.callback_url = callback_url

    async def start(self, provider: Any, intent: OAuthIntent,
                    account_id: Optional[str] = None,
                    scope_names: Optional[List[str]] = None) -> Optional[str]:
        """Ask the server for the provider URL and navigate to it.

        Returns
        -------
        str or None
            The URL navigated to, or ``None`` if the server says a
            reauthorization is not needed.
        """
        intent = OAuthIntent(intent)
        redirect_url = with_query(self.callback_url, intent=intent.value)
        if intent in (OAuthIntent.SIGNIN, OAuthIntent.SIGNUP):
            url = await self._api.oauth_url(intent.value, provider,
                                            redirect_url)
        elif intent is OAuthIntent.PERMISSION:
            if not account_id:
                raise ValidationError('Permission request needs an account',
                                      'account_id')
            url = await self._api.permission_url(provider, account_id,
                                                 scope_names or [],
                                                 redirect_url)
        else:
            if not account_id:
                raise ValidationError('Reauthorization needs an account',
                                      'account_id')
            url = await self._api.reauthorize_url(provider, account_id,
                                                  redirect_url)
        if not url:
            if intent is OAuthIntent.REAUTHORIZE:
                logger.info('No reauthorization needed for %s', account_id)
                return None
            raise TransportError('MISSING_URL',
                                 'Server did not return an authorization URL')
        logger.info('Redirecting for %s with %s', intent.value, provider)
        self.navigator.assign(url)
        return url


class PermissionRetry:
    """Permission and reauthorize requests, with bounded manual retry.

    After a failure :meth:`retry` is refused until ``cooldown_ms`` has
    passed, and refused for good once ``max_retries`` retries have been
    spent. Any success resets the count.
    """

    def __init__(self, continuation: OAuthContinuation, max_retries: int = 3,
                 cooldown_ms: int = 5000,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._continuation = continuation
        self.max_retries = max_retries
        self.cooldown = cooldown_ms / 1000
        self._clock = clock
        self.attempts = 0
        self.error: Optional[str] = None
        self._last_failure: Optional[float] = None
        self._request: Optional[Dict[str, Any]] = None

    async def request_permission(self, provider: Any, account_id: str,
                                 scope_names: List[str]) -> Optional[str]:
        """Ask for additional scopes on an OAuth account and redirect to
        the provider. Starts a fresh retry count."""
        return await self._begin(provider=provider,
                                 intent=OAuthIntent.PERMISSION,
                                 account_id=account_id,
                                 scope_names=list(scope_names))

    async def reauthorize(self, provider: Any,
                          account_id: str) -> Optional[str]:
        """Redirect to the provider to renew consent, if the server says it
        is needed. Starts a fresh retry count."""
        return await self._begin(provider=provider,
                                 intent=OAuthIntent.REAUTHORIZE,
                                 account_id=account_id)

    async def _begin(self, **request: Any) -> Optional[str]:
        self.reset()
        self._request = request
        return await self._run()

    @property
    def seconds_until_retry(self) -> float:
        if self._last_failure is None:
            return 0
        elapsed = self._clock() - self._last_failure
        return max(0.0, self.cooldown - elapsed)

    @property
    def can_retry(self) -> bool:
        return self._request is not None \
            and self._last_failure is not None \
            and self.attempts < self.max_retries \
            and self.seconds_until_retry == 0

    async def retry(self) -> Optional[str]:
        """Repeat the last failed request.

        Raises
        ------
        :class:`.RetryCooldown`
            If the cooldown since the last failure has not passed.
        :class:`.RetryLimitExceeded`
            If no retries remain.
        :class:`.RetryRejected`
            If there is nothing to retry.
        """
        if self._request is None or self._last_failure is None:
            raise RetryRejected('Nothing to retry')
        if self.attempts >= self.max_retries:
            raise RetryLimitExceeded(
                'Maximum retry attempts reached. Please start over.')
        wait = self.seconds_until_retry
        if wait > 0:
            raise RetryCooldown(
                f'Please wait {math.ceil(wait)} seconds before retrying',
                wait)
        self.attempts += 1
        logger.info('Retrying permission request (%s of %s)',
                    self.attempts, self.max_retries)
        return await self._run()

    async def _run(self) -> Optional[str]:
        try:
            url = await self._continuation.start(**self._request)
        except TransportError as e:
            self._last_failure = self._clock()
            self.error = e.message
            raise
        self.reset()
        return url

    def reset(self) -> None:
        self.attempts = 0
        self.error = None
        self._last_failure = None
        self._request = None


Handler = Callable[[CallbackData], Awaitable[ContinuationResult]]
Override = Callable[[CallbackData, Handler], Awaitable[ContinuationResult]]


class CallbackDispatcher:
    """Acts on a continuation URL.

    Parameters
    ----------
    overrides : dict
        Optional replacement handlers keyed by :class:`.CallbackCode`. Each
        is called with the decoded data and the default handler.
    default_redirect : str
    redirect_pattern : str
        A ``redirectUrl`` carried on the callback is only passed on if it
        matches this pattern.
    """

    def __init__(self, engine: AuthenticationEngine,
                 sessions: SessionSynchronizer, accounts: AccountService,
                 lifecycle: AccountLifecycle, store: AccountStore,
                 continuation: OAuthContinuation,
                 permissions: PermissionRetry,
                 default_redirect: str = '/',
                 redirect_pattern: str = r'^/',
                 overrides: Optional[Mapping[CallbackCode, Override]] = None
                 ) -> None:
        self._engine = engine
        self._sessions = sessions
        self._accounts = accounts
        self._lifecycle = lifecycle
        self._store = store
        self._continuation = continuation
        self._permissions = permissions
        self.default_redirect = default_redirect
        self.redirect_pattern = redirect_pattern
        self.overrides = dict(overrides or {})
        self._handlers: Dict[CallbackCode, Handler] = {
            CallbackCode.OAUTH_SIGNIN_SUCCESS: self._signed_in,
            CallbackCode.OAUTH_SIGNUP_SUCCESS: self._signed_in,
            CallbackCode.LOCAL_SIGNIN_SUCCESS: self._signed_in,
            CallbackCode.OAUTH_PERMISSION_SUCCESS: self._permission_granted,
            CallbackCode.LOCAL_2FA_REQUIRED: self._two_factor_required,
            CallbackCode.LOCAL_SIGNUP_SUCCESS: self._notice,
            CallbackCode.LOCAL_EMAIL_VERIFIED: self._notice,
            CallbackCode.LOCAL_PASSWORD_RESET_SUCCESS: self._notice,
            CallbackCode.LOGOUT_SUCCESS: self._logged_out,
            CallbackCode.LOGOUT_DISABLE_SUCCESS: self._logged_out,
            CallbackCode.LOGOUT_ALL_SUCCESS: self._logged_out_all,
            CallbackCode.PERMISSION_REAUTHORIZE: self._reauthorize,
            CallbackCode.ACCOUNT_SELECTION_REQUIRED: self._select_account,
            CallbackCode.UNKNOWN: self._unknown,
        }
        for code in ERROR_MESSAGES:
            self._handlers[code] = self._error

    async def process(self, navigator: Navigator
                      ) -> Optional[ContinuationResult]:
        """Handle the callback on the current location, if there is one.

        The query string is removed from the location afterwards, even if
        handling failed.
        """
        data = parse_callback(query_string(navigator.current_url()))
        if data is None:
            return None
        try:
            return await self.dispatch(data)
        finally:
            strip_query(navigator)

    async def dispatch(self, data: CallbackData) -> ContinuationResult:
        """Run the handler for ``data.code``.

        A handler that raises produces a failed result and sets the global
        error; the exception does not propagate.
        """
        logger.info('Handling callback %s', data.code.value)
        handler = self._handlers[data.code]
        override = self.overrides.get(data.code)
        try:
            if override is not None:
                return await override(data, handler)
            return await handler(data)
        except Exception as e:
            logger.exception('Callback %s could not be handled',
                             data.code.value)
            message = str(e) or 'Callback processing failed'
            self._store.set_global_error(message)
            return ContinuationResult(code=data.code, success=False,
                                      account_id=data.account_id,
                                      message=message, data=data)

    def _redirect(self, data: CallbackData) -> str:
        return good_next_page(data.redirect_url, self.default_redirect,
                              self.redirect_pattern)

    def _failed(self, data: CallbackData,
                message: str) -> ContinuationResult:
        logger.warning('Callback %s: %s', data.code.value, message)
        self._store.set_global_error(message)
        return ContinuationResult(code=data.code, success=False,
                                  account_id=data.account_id,
                                  message=message, data=data)

    async def _signed_in(self, data: CallbackData) -> ContinuationResult:
        account_id = data.account_id
        if not account_id:
            return self._failed(data, 'Callback is missing the account')
        await self._sessions.adopt(account_id)
        if account_id in self._store.missing([account_id]):
            provider = data.oauth_provider
            self._store.set_summary(account_id, SessionAccountSummary(
                id=account_id,
                account_type=AccountType.OAUTH if provider
                else AccountType.LOCAL,
                user_details={'name': data.name or ''},
                provider=provider
            ))
        self._store.clear_global_error()
        return ContinuationResult(code=data.code, success=True,
                                  account_id=account_id,
                                  message=data.message,
                                  redirect_url=self._redirect(data),
                                  data=data)

    async def _permission_granted(self,
                                  data: CallbackData) -> ContinuationResult:
        self._permissions.reset()
        if data.account_id:
            await self._accounts.fetch(data.account_id)
        return ContinuationResult(code=data.code, success=True,
                                  account_id=data.account_id,
                                  message=data.message,
                                  redirect_url=self._redirect(data),
                                  data=data)

    async def _two_factor_required(self,
                                   data: CallbackData) -> ContinuationResult:
        if not data.temp_token:
            return self._failed(data, 'Callback is missing the temp token')
        self._engine.begin_challenge(data.temp_token, data.account_id)
        return ContinuationResult(code=data.code, success=True,
                                  account_id=data.account_id,
                                  message=data.message, data=data)

    async def _notice(self, data: CallbackData) -> ContinuationResult:
        return ContinuationResult(code=data.code, success=True,
                                  account_id=data.account_id,
                                  message=data.message,
                                  redirect_url=self._redirect(data),
                                  data=data)

    async def _logged_out(self, data: CallbackData) -> ContinuationResult:
        account_id = data.account_id
        if not account_id:
            return self._failed(data, 'Callback is missing the account')
        if data.code is CallbackCode.LOGOUT_DISABLE_SUCCESS:
            clear_state = False
        elif data.clear_client_account_state is None:
            clear_state = True
        else:
            clear_state = data.clear_client_account_state
        self._lifecycle.apply_logout(account_id, clear_state)
        return ContinuationResult(code=data.code, success=True,
                                  account_id=account_id,
                                  message=data.message,
                                  redirect_url=self._redirect(data),
                                  data=data)

    async def _logged_out_all(self, data: CallbackData) -> ContinuationResult:
        self._lifecycle.apply_logout_all()
        return ContinuationResult(code=data.code, success=True,
                                  message=data.message,
                                  redirect_url=self._redirect(data),
                                  data=data)

    async def _error(self, data: CallbackData) -> ContinuationResult:
        message = data.error or data.message or ERROR_MESSAGES[data.code]
        return self._failed(data, message)

    async def _reauthorize(self, data: CallbackData) -> ContinuationResult:
        if not data.account_id or data.oauth_provider is None:
            return self._failed(data, 'Callback is missing the account '
                                      'or provider')
        url = await self._continuation.start(data.oauth_provider,
                                             OAuthIntent.REAUTHORIZE,
                                             data.account_id)
        return ContinuationResult(code=data.code, success=True,
                                  account_id=data.account_id,
                                  message=data.message, redirect_url=url,
                                  data=data)

    async def _select_account(self,
                              data: CallbackData) -> ContinuationResult:
        return ContinuationResult(code=data.code, success=True,
                                  message=data.message, data=data)

    async def _unknown(self, data: CallbackData) -> ContinuationResult:
        return self._failed(data, 'Unknown callback code')
