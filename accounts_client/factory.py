"""Client factory: builds every component once and wires them together."""

import logging
from typing import Any, Dict, Mapping, Optional

from . import config
from .accounts import AccountService
from .authentication import AuthenticationEngine
from .callback import CallbackDispatcher, OAuthContinuation, Override, \
    PermissionRetry
from .domain import CallbackCode, ContinuationResult
from .lifecycle import AccountLifecycle
from .navigation import MemoryNavigator, Navigator
from .services.api import AuthApi
from .services.realtime import Realtime
from .services.transport import HttpTransport, Transport
from .sessions import SessionSynchronizer
from .store import AccountStore

logger = logging.getLogger(__name__)


def get_config(overrides: Optional[Mapping[str, Any]] = None
               ) -> Dict[str, Any]:
    """Settings from :mod:`.config`, with ``overrides`` applied."""
    settings = {key: getattr(config, key) for key in dir(config)
                if key.isupper()}
    settings.update(overrides or {})
    return settings


class AuthClient:
    """Every component of one client, sharing one store.

    Attributes
    ----------
    store : :class:`.AccountStore`
    transport : :class:`.Transport`
    api : :class:`.AuthApi`
    accounts : :class:`.AccountService`
    sessions : :class:`.SessionSynchronizer`
    auth : :class:`.AuthenticationEngine`
    lifecycle : :class:`.AccountLifecycle`
    oauth : :class:`.OAuthContinuation`
    permissions : :class:`.PermissionRetry`
    callbacks : :class:`.CallbackDispatcher`
    navigator : :class:`.Navigator`
    """

    def __init__(self, store: AccountStore, transport: Transport,
                 api: AuthApi, accounts: AccountService,
                 sessions: SessionSynchronizer, auth: AuthenticationEngine,
                 lifecycle: AccountLifecycle, oauth: OAuthContinuation,
                 permissions: PermissionRetry, callbacks: CallbackDispatcher,
                 navigator: Navigator) -> None:
        self.store = store
        self.transport = transport
        self.api = api
        self.accounts = accounts
        self.sessions = sessions
        self.auth = auth
        self.lifecycle = lifecycle
        self.oauth = oauth
        self.permissions = permissions
        self.callbacks = callbacks
        self.navigator = navigator

    async def start(self) -> Optional[ContinuationResult]:
        """Handle any callback on the current location, then load the
        session if the callback did not already."""
        result = await self.callbacks.process(self.navigator)
        if not self.sessions.refreshed:
            await self.sessions.refresh()
        return result

    async def aclose(self) -> None:
        self.auth.dispose()
        close = getattr(self.transport, 'close', None)
        if close is not None:
            await close()


def create_client(settings: Optional[Mapping[str, Any]] = None,
                  transport: Optional[Transport] = None,
                  navigator: Optional[Navigator] = None,
                  realtime: Optional[Realtime] = None,
                  overrides: Optional[Mapping[CallbackCode, Override]] = None
                  ) -> AuthClient:
    """Build a client.

    Parameters
    ----------
    settings : dict
        Overrides for :mod:`.config`.
    transport : :class:`.Transport`
        Defaults to an :class:`.HttpTransport` for ``BACKEND_URL``.
    navigator : :class:`.Navigator`
        Defaults to a :class:`.MemoryNavigator`.
    realtime : :class:`.Realtime`
        Optional notification channel to keep subscribed to the session's
        accounts.
    overrides : dict
        Per-code callback handlers; see :class:`.CallbackDispatcher`.
    """
    settings = get_config(settings)
    if transport is None:
        transport = HttpTransport(settings['BACKEND_URL'],
                                  settings['PROXY_PATH'],
                                  settings['REQUEST_TIMEOUT'])
    navigator = navigator or MemoryNavigator(settings['FRONTEND_URL'])

    store = AccountStore()
    api = AuthApi(transport, strict_ids=settings['STRICT_ACCOUNT_IDS'])
    accounts = AccountService(api, store, settings['ACCOUNT_MAX_AGE'])
    sessions = SessionSynchronizer(api, store, accounts, realtime)
    auth = AuthenticationEngine(api, sessions, store,
                                settings['TWO_FACTOR_MAX_ATTEMPTS'],
                                settings['TWO_FACTOR_LOCKOUT_MS'])
    lifecycle = AccountLifecycle(api, sessions, store, realtime)
    oauth = OAuthContinuation(api, navigator, settings['CALLBACK_URL'])
    permissions = PermissionRetry(oauth,
                                  settings['PERMISSION_RETRY_MAX'],
                                  settings['PERMISSION_RETRY_COOLDOWN_MS'])
    callbacks = CallbackDispatcher(
        auth, sessions, accounts, lifecycle, store, oauth, permissions,
        default_redirect=settings['DEFAULT_LOGIN_REDIRECT_URL'],
        redirect_pattern=settings['LOGIN_REDIRECT_REGEX'],
        overrides=overrides
    )
    logger.debug('Client created for %s', settings['BACKEND_URL'])
    return AuthClient(store, transport, api, accounts, sessions, auth,
                      lifecycle, oauth, permissions, callbacks, navigator)
