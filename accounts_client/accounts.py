"""Loading and updating full account records."""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from .domain import Account, AccountType, LoadStatus, TokenInformation
from .services.api import AuthApi, validate_account_id, \
    validate_account_update
from .store import AccountStore

logger = logging.getLogger(__name__)


class AccountService:
    """Fetches accounts from the server and writes them to the store.

    Failures are recorded on the account's record and re-raised; the data
    already held for the account is left alone.
    """

    def __init__(self, api: AuthApi, store: AccountStore,
                 max_age: float = 300) -> None:
        self._api = api
        self._store = store
        self.max_age = max_age

    async def fetch(self, account_id: str) -> Account:
        validate_account_id(account_id, 'get account', self._api.strict_ids)
        self._store.set_status(account_id, LoadStatus.LOADING)
        try:
            account = await self._api.get_account(account_id)
        except Exception as e:
            logger.warning('Could not load account %s: %s', account_id, e)
            self._store.set_error(account_id, str(e))
            raise
        self._store.set_full(account_id, account)
        return account

    async def ensure(self, account_id: str,
                     max_age: Optional[float] = None) -> Optional[Account]:
        """Fetch ``account_id`` only if it is missing or stale."""
        age = self.max_age if max_age is None else max_age
        if self._store.is_stale(account_id, age):
            return await self.fetch(account_id)
        record = self._store.get(account_id)
        return record.account if record else None

    async def update(self, account_id: str,
                     changes: Mapping[str, Any]) -> Account:
        """Change profile fields of an account.

        ``changes`` uses attribute names, e.g. ``{'first_name': 'Jane'}``.
        Invalid changes are rejected before any request.
        """
        validate_account_update(changes)
        record = self._store.get(account_id)
        if record is not None and record.has_data:
            self._store.set_status(account_id, LoadStatus.UPDATING)
        try:
            account = await self._api.update_account(account_id, changes)
        except Exception as e:
            logger.warning('Could not update account %s: %s', account_id, e)
            if record is not None and record.has_data:
                self._store.set_error(account_id, str(e))
            raise
        self._store.set_full(account_id, account)
        return account

    async def search(self, email: str) -> Optional[str]:
        return await self._api.search_account(email)

    async def get_email(self, account_id: str) -> Optional[str]:
        return await self._api.get_account_email(account_id)

    def _account_type(self, account_id: str) -> AccountType:
        record = self._store.get(account_id)
        if record is not None and record.account is not None:
            return record.account.account_type
        if record is not None and record.summary is not None:
            return record.summary.account_type
        return AccountType.LOCAL

    async def token_information(self, account_id: str) -> TokenInformation:
        """Access and refresh token status for an account.

        OAuth accounts are asked about their provider tokens, anything
        else (including accounts not yet loaded) about its local tokens.
        """
        if self._account_type(account_id) == AccountType.OAUTH:
            access = self._api.oauth_token_info(account_id)
            refresh = self._api.oauth_refresh_token_info(account_id)
        else:
            access = self._api.local_token_info(account_id)
            refresh = self._api.local_refresh_token_info(account_id)
        access, refresh = await asyncio.gather(access, refresh)
        return TokenInformation(account_id=account_id, access_token=access,
                                refresh_token=refresh)

    async def revoke_oauth_tokens(self, account_id: str) -> Dict[str, Any]:
        try:
            return await self._api.revoke_oauth_tokens(account_id)
        except Exception as e:
            logger.warning('Could not revoke tokens for %s: %s',
                           account_id, e)
            raise
