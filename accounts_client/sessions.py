"""
Keeps the local session in step with the account server.

The server is the authority on which accounts are logged in and which one
is current. :class:`SessionSynchronizer` only ever writes a whole
:class:`.Session` to the store, so whichever call resolves last wins.
"""

import logging
from typing import Iterable, List, Optional

from pydantic import ValidationError as ModelValidationError

from .accounts import AccountService
from .domain import LoadStatus, Session
from .exceptions import AccountDisabled, TransportError, UnknownAccount
from .services.api import AuthApi
from .services.realtime import Realtime
from .store import AccountStore

logger = logging.getLogger(__name__)


class SessionSynchronizer:
    """Reconciles the local session with the server.

    Parameters
    ----------
    api : :class:`.AuthApi`
    store : :class:`.AccountStore`
    accounts : :class:`.AccountService`
        Used to load the full record of a newly authenticated account.
    realtime : :class:`.Realtime` or None
        If given, accounts entering the session are subscribed and accounts
        leaving it are unsubscribed.
    """

    def __init__(self, api: AuthApi, store: AccountStore,
                 accounts: AccountService,
                 realtime: Optional[Realtime] = None) -> None:
        self._api = api
        self._store = store
        self._accounts = accounts
        self._realtime = realtime
        # Set once the session has come from the server; local edits such
        # as applying a logout callback do not count.
        self.refreshed = False

    @property
    def session(self) -> Session:
        return self._store.session.data

    async def refresh(self) -> Session:
        """Replace the local session with the server's.

        Summaries for every account in the session are then fetched in one
        call. A failure there is logged against the affected accounts and
        does not fail the refresh.

        Raises
        ------
        :class:`.TransportError`
            If the session could not be fetched. The previous session is
            kept and the session error slot is set.
        """
        self._store.set_session_status(LoadStatus.LOADING)
        try:
            session = await self._api.get_session()
        except Exception as e:
            logger.warning('Session refresh failed: %s', e)
            self._store.fail_session(str(e))
            raise
        self.refreshed = True
        self.replace(session)
        if session.account_ids:
            await self._load_summaries(session.account_ids)
        return session

    async def _load_summaries(self, account_ids: List[str]) -> None:
        try:
            summaries = await self._api.get_session_accounts(account_ids)
        except (TransportError, ModelValidationError) as e:
            logger.warning('Could not load account summaries: %s', e)
            for account_id in self._store.missing(account_ids):
                self._store.set_error(account_id, str(e))
            return
        for summary in summaries:
            self._store.set_summary(summary.id, summary)
        for account_id in self._store.missing(account_ids):
            logger.warning('No summary returned for account %s', account_id)
            self._store.set_error(account_id, 'Account data not available')

    def replace(self, session: Session) -> Session:
        """Write ``session`` to the store as the new session."""
        previous = self._store.session.data
        self._store.replace_session(session)
        self._follow(session.account_ids, previous.account_ids)
        return session

    def _follow(self, current: Iterable[str], previous: Iterable[str]) -> None:
        if self._realtime is None:
            return
        current, previous = list(current), list(previous)
        for account_id in current:
            if account_id not in previous:
                self._realtime.subscribe(account_id)
        for account_id in previous:
            if account_id not in current:
                self._realtime.unsubscribe(account_id)

    async def set_current(self, account_id: str) -> Session:
        """Make ``account_id`` the current account.

        The local pointer moves only after the server has accepted the
        change.

        Raises
        ------
        :class:`.UnknownAccount`
            If the account is not in the session. No request is made.
        :class:`.AccountDisabled`
            If the account is disabled on this client. No request is made.
        """
        if not self.session.has(account_id):
            raise UnknownAccount(f'Account {account_id} is not in session')
        if self._store.is_disabled(account_id):
            raise AccountDisabled(f'Account {account_id} is disabled')
        try:
            await self._api.set_current_account(account_id)
        except Exception as e:
            logger.warning('Could not set current account %s: %s',
                           account_id, e)
            self._store.fail_session(str(e))
            raise
        latest = self.session
        if not latest.has(account_id):
            logger.info('Account %s left the session before it became '
                        'current', account_id)
            return latest
        return self.replace(latest.with_current(account_id))

    async def adopt(self, account_id: str) -> Session:
        """Bring a newly authenticated account into the session.

        The account is added to the server's session if the server has not
        already done so, made current, and its full record is loaded. A
        fresh login clears any disabled flag on the account.
        """
        self._store.enable(account_id)
        session = await self.refresh()
        if not session.has(account_id):
            await self._api.add_account_to_session(account_id,
                                                   set_as_current=True)
            session = await self.refresh()
        if session.has(account_id) \
                and session.current_account_id != account_id:
            session = await self.set_current(account_id)
        try:
            await self._accounts.fetch(account_id)
        except (TransportError, ModelValidationError) as e:
            logger.warning('Signed in to %s but could not load it: %s',
                           account_id, e)
        return session

    def reset(self) -> None:
        """Drop every account and the session, in one step."""
        previous = self._store.session.data
        self._store.clear()
        self._follow([], previous.account_ids)
