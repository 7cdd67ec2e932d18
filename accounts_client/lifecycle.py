"""
Switching between, logging out of, and forgetting accounts.

What each operation does to an account:

``logout(id, clear_state=True)``
    Server logout, then the account is purged locally.
``logout(id, clear_state=False)``
    Server logout, then the account is kept locally but disabled.
``disable(id)``
    Disabled locally; the server is not told.
``reactivate(id)``
    Disabled flag cleared; the user must log in again to use it.
``remove(id)``
    Purged locally; the server is not told.

Leaving the session promotes the first remaining account to current.
"""

import logging
from typing import Optional

from .domain import AccountRecord, Session
from .exceptions import AccountDisabled, UnknownAccount, ValidationError
from .services.api import AuthApi
from .services.realtime import Realtime
from .sessions import SessionSynchronizer
from .store import AccountStore

logger = logging.getLogger(__name__)

ACTIVE = 'active'
DISABLED = 'disabled'
NOT_FOUND = 'not_found'


class AccountLifecycle:
    """Multi-account operations over the store and the session."""

    def __init__(self, api: AuthApi, sessions: SessionSynchronizer,
                 store: AccountStore,
                 realtime: Optional[Realtime] = None) -> None:
        self._api = api
        self._sessions = sessions
        self._store = store
        self._realtime = realtime

    def status_of(self, account_id: str) -> str:
        """``active``, ``disabled`` or ``not_found``."""
        if self._store.is_disabled(account_id):
            return DISABLED
        record = self._store.get(account_id)
        if (record is not None and record.has_data) \
                or self._sessions.session.has(account_id):
            return ACTIVE
        return NOT_FOUND

    def can_switch_to(self, account_id: str) -> bool:
        return self._sessions.session.has(account_id) \
            and not self._store.is_disabled(account_id)

    async def switch_to(self, account_id: str) -> Session:
        """Make another logged-in account current.

        Raises
        ------
        :class:`.AccountDisabled`
        :class:`.UnknownAccount`
            Both are raised before any request; nothing changes.
        """
        if self._store.is_disabled(account_id):
            raise AccountDisabled(f'Account {account_id} is disabled')
        if not self._sessions.session.has(account_id):
            raise UnknownAccount(f'Account {account_id} is not in session')
        return await self._sessions.set_current(account_id)

    async def logout(self, account_id: Optional[str] = None,
                     clear_state: bool = True) -> Session:
        """Log one account out, the current one by default.

        The server is always told. Locally the account is then purged, or
        kept as disabled if ``clear_state`` is false.

        Raises
        ------
        :class:`.ValidationError`
            If no account was given and none is current.
        :class:`.TransportError`
            If the server logout failed; nothing changes locally.
        """
        target = account_id or self._sessions.session.current_account_id
        if not target:
            raise ValidationError('No account to log out', 'account_id')
        try:
            await self._api.logout(target, clear_state)
        except Exception as e:
            logger.warning('Logout of %s failed: %s', target, e)
            if target in self._store:
                self._store.set_error(target, str(e))
            raise
        logger.info('Logged out %s (clear_state=%s)', target, clear_state)
        return self.apply_logout(target, clear_state)

    def apply_logout(self, account_id: str,
                     clear_state: bool = True) -> Session:
        """Local half of a logout the server has already done."""
        if clear_state:
            self._store.remove(account_id)
        else:
            self._store.disable(account_id)
        return self._sessions.replace(
            self._sessions.session.without(account_id))

    async def logout_all(self) -> bool:
        """Log out every account and reset all local state.

        Local state is reset even if the server call fails; the failure is
        then logged and put in the global error slot.

        Returns
        -------
        bool
            Whether the server confirmed the logout.
        """
        tracked = list(self._sessions.session.account_ids)
        tracked += [r.id for r in self._store.list_active()
                    if r.id not in tracked]
        error = None
        if tracked:
            try:
                await self._api.logout_all(tracked)
            except Exception as e:
                logger.warning('Logout of all accounts failed: %s', e)
                error = str(e) or type(e).__name__
        self.apply_logout_all()
        if error is not None:
            self._store.set_global_error(error)
        return error is None

    def apply_logout_all(self) -> None:
        self._sessions.reset()
        logger.info('All accounts logged out')

    def disable(self, account_id: str) -> AccountRecord:
        """Hide an account on this client without telling the server."""
        record = self._store.disable(account_id)
        if self._realtime is not None:
            self._realtime.unsubscribe(account_id)
        return record

    def reactivate(self, account_id: str) -> AccountRecord:
        """Clear the disabled flag. Does not log the account back in.

        Raises
        ------
        :class:`.UnknownAccount`
            If nothing is known about the account.
        """
        record = self._store.enable(account_id)
        if record is None:
            raise UnknownAccount(f'Account {account_id} is not known')
        return record

    def remove(self, account_id: str) -> Session:
        """Forget an account on this client. The server is not told."""
        self._store.remove(account_id)
        session = self._sessions.session
        if not session.has(account_id):
            return session
        return self._sessions.replace(session.without(account_id))
