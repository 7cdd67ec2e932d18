"""
Endpoint wrappers for the account server.

Arguments are checked here, before anything is sent; a bad argument raises
:class:`.ValidationError` and no request is made. Responses are parsed into
domain objects where the client relies on their shape.
"""

import json
import logging
import re
from datetime import date
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from pydantic import ValidationError as ModelValidationError

from ..domain import Account, LoginResult, OAuthProvider, Session, \
    SessionAccountSummary, TokenInfo, TwoFactorSetup
from ..exceptions import ValidationError
from .transport import Transport

logger = logging.getLogger(__name__)

ACCOUNT_ID = re.compile(r'^[0-9a-f]{24}$')
EMAIL = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
BIRTHDATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')

UPDATABLE_FIELDS = {
    'first_name': 'firstName',
    'last_name': 'lastName',
    'name': 'name',
    'image_url': 'imageUrl',
    'birthdate': 'birthdate',
    'username': 'username',
}
"""Account fields a client may change, mapped to their wire names."""

_LENGTHS = {
    'first_name': (1, 50),
    'last_name': (1, 50),
    'name': (1, 100),
    'username': (3, 30),
}


def validate_account_id(account_id: Optional[str], context: str,
                        strict: bool = False) -> str:
    """Check that ``account_id`` is usable.

    Parameters
    ----------
    account_id : str
    context : str
        What the id is for; used in the error message.
    strict : bool
        Also require the 24 lowercase hex format.

    Returns
    -------
    str
        The id, stripped of surrounding whitespace.

    Raises
    ------
    :class:`.ValidationError`
    """
    if not isinstance(account_id, str) or not account_id.strip():
        raise ValidationError(f'Valid accountId is required for {context}',
                              'account_id')
    account_id = account_id.strip()
    if strict and not ACCOUNT_ID.match(account_id):
        raise ValidationError(f'Malformed accountId for {context}',
                              'account_id')
    return account_id


def validate_email(email: Optional[str], context: str) -> str:
    if not isinstance(email, str) or not email.strip():
        raise ValidationError(f'Valid email is required for {context}',
                              'email')
    if not EMAIL.match(email):
        raise ValidationError(f'Invalid email format for {context}', 'email')
    return email


def validate_required(value: Any, field: str, context: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f'{field} is required for {context}', field)


def validate_account_update(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Check an account update and render it for the wire.

    Raises
    ------
    :class:`.ValidationError`
        If no updatable field is present, a field is not updatable, or a
        value is out of range.
    """
    context = 'account update'
    if not changes:
        raise ValidationError(
            'At least one valid field must be provided for account update. '
            f'Allowed fields: {", ".join(UPDATABLE_FIELDS)}'
        )
    invalid = [k for k in changes if k not in UPDATABLE_FIELDS]
    if invalid:
        raise ValidationError(
            f'Invalid fields provided: {", ".join(invalid)}. Only these '
            f'fields can be updated: {", ".join(UPDATABLE_FIELDS)}',
            invalid[0]
        )
    for field, value in changes.items():
        if field in ('image_url', 'birthdate', 'username') \
                and value in (None, ''):
            continue
        if field in _LENGTHS:
            low, high = _LENGTHS[field]
            if not isinstance(value, str):
                raise ValidationError(
                    f'{field} must be a string for {context}', field)
            if len(value.strip()) < low:
                raise ValidationError(
                    f'{field} must be at least {low} characters for '
                    f'{context}', field)
            if len(value.strip()) > high:
                raise ValidationError(
                    f'{field} cannot exceed {high} characters for {context}',
                    field)
        elif field == 'image_url':
            parsed = urlparse(str(value))
            if not parsed.scheme or not parsed.netloc:
                raise ValidationError(f'Invalid URL format for {context}',
                                      field)
        elif field == 'birthdate':
            _check_birthdate(value, context)
    return {UPDATABLE_FIELDS[k]: v for k, v in changes.items()}


def _check_birthdate(value: Any, context: str) -> None:
    if not isinstance(value, str) or not BIRTHDATE.match(value):
        raise ValidationError(
            f'Invalid birthdate format for {context}. Use YYYY-MM-DD format',
            'birthdate')
    try:
        born = date.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f'Invalid birthdate for {context}',
                              'birthdate') from e
    if born > date.today():
        raise ValidationError(
            f'Birthdate cannot be in the future for {context}', 'birthdate')


def _provider(provider: Any) -> str:
    try:
        return OAuthProvider(provider).value
    except ValueError as e:
        raise ValidationError(f'Unsupported OAuth provider: {provider}',
                              'provider') from e


def _summaries(data: Any) -> List[SessionAccountSummary]:
    """Parse a batch of summaries, dropping the ones that do not parse.

    A malformed entry is logged and skipped; the rest of the batch is kept.
    """
    if isinstance(data, dict):
        data = data.get('accounts') or []
    summaries = []
    for item in data or []:
        try:
            summaries.append(SessionAccountSummary.model_validate(item))
        except ModelValidationError as e:
            account_id = item.get('id') if isinstance(item, dict) else None
            logger.warning('Dropping malformed summary for %s: %s',
                           account_id, e)
    return summaries


class AuthApi:
    """Typed access to the account server's session, auth and account
    endpoints."""

    def __init__(self, transport: Transport, strict_ids: bool = False) -> None:
        self.transport = transport
        self.strict_ids = strict_ids

    def _id(self, account_id: Optional[str], context: str) -> str:
        return validate_account_id(account_id, context, self.strict_ids)

    # Session.

    async def get_session(self) -> Session:
        data = await self.transport.get('/session')
        if isinstance(data, dict) and 'session' in data:
            data = data['session']
        return Session.model_validate(data or {})

    async def get_session_accounts(
            self, account_ids: List[str]) -> List[SessionAccountSummary]:
        """Fetch summaries for several accounts in one call."""
        params = {'accountIds': list(account_ids)} if account_ids else None
        data = await self.transport.get('/session/accounts', params=params)
        return _summaries(data)

    async def set_current_account(self, account_id: Optional[str]) -> Any:
        if account_id is not None:
            account_id = self._id(account_id, 'set current account')
        return await self.transport.post('/session/current',
                                         {'accountId': account_id})

    async def add_account_to_session(self, account_id: str,
                                     set_as_current: bool = True) -> Any:
        account_id = self._id(account_id, 'add account to session')
        return await self.transport.post('/session/add', {
            'accountId': account_id,
            'setAsCurrent': set_as_current
        })

    async def remove_account_from_session(self, account_id: str) -> Any:
        account_id = self._id(account_id, 'remove account from session')
        return await self.transport.post('/session/remove',
                                         {'accountId': account_id})

    # Local authentication.

    async def signup(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        validate_email(data.get('email'), 'signup')
        validate_required(data.get('password'), 'password', 'signup')
        if data.get('password') != data.get('confirmPassword',
                                             data.get('password')):
            raise ValidationError('Passwords do not match', 'confirmPassword')
        return await self.transport.post('/auth/signup', dict(data)) or {}

    async def login(self, data: Mapping[str, Any]) -> LoginResult:
        if not data.get('email') and not data.get('username'):
            raise ValidationError('Email or username is required for login',
                                  'email')
        if data.get('email'):
            validate_email(data['email'], 'login')
        validate_required(data.get('password'), 'password', 'login')
        result = await self.transport.post('/auth/login', dict(data))
        return LoginResult.model_validate(result or {})

    async def verify_two_factor(self, token: str,
                                temp_token: str) -> LoginResult:
        validate_required(token, 'token', 'two-factor verification')
        validate_required(temp_token, 'tempToken', 'two-factor verification')
        result = await self.transport.post('/auth/verify-two-factor', {
            'token': token,
            'tempToken': temp_token
        })
        return LoginResult.model_validate(result or {})

    async def verify_email(self, token: str) -> Dict[str, Any]:
        validate_required(token, 'token', 'email verification')
        return await self.transport.get('/auth/verify-email',
                                        params={'token': token}) or {}

    async def request_password_reset(self, email: str) -> Dict[str, Any]:
        validate_email(email, 'password reset')
        return await self.transport.post('/auth/reset-password-request',
                                         {'email': email}) or {}

    async def reset_password(self, token: str, password: str,
                             confirm_password: str) -> Dict[str, Any]:
        validate_required(token, 'token', 'password reset')
        validate_required(password, 'password', 'password reset')
        if password != confirm_password:
            raise ValidationError('Passwords do not match', 'confirmPassword')
        return await self.transport.post(
            '/auth/reset-password',
            {'password': password, 'confirmPassword': confirm_password},
            params={'token': token}
        ) or {}

    async def change_password(self, account_id: str, old_password: str,
                              new_password: str,
                              confirm_password: str) -> Dict[str, Any]:
        account_id = self._id(account_id, 'password change')
        validate_required(old_password, 'oldPassword', 'password change')
        validate_required(new_password, 'newPassword', 'password change')
        if new_password != confirm_password:
            raise ValidationError('Passwords do not match', 'confirmPassword')
        return await self.transport.post(
            f'/{account_id}/auth/change-password',
            {'oldPassword': old_password, 'newPassword': new_password,
             'confirmPassword': confirm_password}
        ) or {}

    # Two-factor setup.

    async def setup_two_factor(self, account_id: str, password: str,
                               enable: bool) -> TwoFactorSetup:
        account_id = self._id(account_id, 'two-factor setup')
        validate_required(password, 'password', 'two-factor setup')
        result = await self.transport.post(
            f'/{account_id}/auth/setup-two-factor',
            {'password': password, 'enableTwoFactor': enable}
        )
        return TwoFactorSetup.model_validate(result or {})

    async def verify_two_factor_setup(self, account_id: str,
                                      token: str) -> Dict[str, Any]:
        account_id = self._id(account_id, 'two-factor setup verification')
        validate_required(token, 'token', 'two-factor setup verification')
        return await self.transport.post(
            f'/{account_id}/auth/verify-two-factor-setup', {'token': token}
        ) or {}

    async def generate_backup_codes(self, account_id: str,
                                    password: str) -> TwoFactorSetup:
        account_id = self._id(account_id, 'backup code generation')
        validate_required(password, 'password', 'backup code generation')
        result = await self.transport.post(
            f'/{account_id}/auth/generate-backup-codes',
            {'password': password}
        )
        return TwoFactorSetup.model_validate(result or {})

    # Tokens.

    async def _token_info(self, account_id: str, path: str,
                          context: str) -> TokenInfo:
        account_id = self._id(account_id, context)
        data = await self.transport.get(f'/{account_id}{path}')
        return TokenInfo.model_validate(data or {})

    async def local_token_info(self, account_id: str) -> TokenInfo:
        return await self._token_info(account_id, '/auth/token',
                                      'local token info')

    async def local_refresh_token_info(self, account_id: str) -> TokenInfo:
        return await self._token_info(account_id, '/auth/refresh/token',
                                      'local refresh token info')

    async def oauth_token_info(self, account_id: str) -> TokenInfo:
        return await self._token_info(account_id, '/oauth/token',
                                      'OAuth token info')

    async def oauth_refresh_token_info(self, account_id: str) -> TokenInfo:
        return await self._token_info(account_id, '/oauth/refresh/token',
                                      'OAuth refresh token info')

    async def revoke_oauth_tokens(self, account_id: str) -> Dict[str, Any]:
        """Revoke the provider tokens the server holds for an account."""
        account_id = self._id(account_id, 'OAuth token revocation')
        return await self.transport.post(f'/{account_id}/oauth/revoke') or {}

    # OAuth.

    async def oauth_url(self, intent: str, provider: Any,
                        redirect_url: str) -> Optional[str]:
        """Ask the server where to send the user for a sign in or sign up."""
        result = await self.transport.get(
            f'/oauth/{intent}/{_provider(provider)}',
            params={'redirectUrl': redirect_url}
        )
        return (result or {}).get('authorizationUrl')

    async def permission_url(self, provider: Any, account_id: str,
                             scope_names: List[str],
                             redirect_url: str) -> Optional[str]:
        account_id = self._id(account_id, 'permission request')
        if not scope_names:
            raise ValidationError('At least one scope is required',
                                  'scope_names')
        result = await self.transport.get(
            f'/oauth/permission/{_provider(provider)}',
            params={'accountId': account_id,
                    'scopeNames': json.dumps(list(scope_names)),
                    'redirectUrl': redirect_url}
        )
        return (result or {}).get('authorizationUrl')

    async def reauthorize_url(self, provider: Any, account_id: str,
                              redirect_url: str) -> Optional[str]:
        """Returns ``None`` when the server says no reauthorization is
        needed."""
        account_id = self._id(account_id, 'reauthorization')
        result = await self.transport.get(
            f'/oauth/reauthorize/{_provider(provider)}',
            params={'accountId': account_id, 'redirectUrl': redirect_url}
        )
        return (result or {}).get('authorizationUrl')

    # Accounts.

    async def get_account(self, account_id: str) -> Account:
        account_id = self._id(account_id, 'get account')
        data = await self.transport.get(f'/{account_id}/account')
        return Account.model_validate(data)

    async def update_account(self, account_id: str,
                             changes: Mapping[str, Any]) -> Account:
        account_id = self._id(account_id, 'account update')
        body = validate_account_update(changes)
        data = await self.transport.patch(f'/{account_id}/account', body)
        return Account.model_validate(data)

    async def get_account_email(self, account_id: str) -> Optional[str]:
        account_id = self._id(account_id, 'get account email')
        data = await self.transport.get(f'/{account_id}/account/email')
        return (data or {}).get('email')

    async def search_account(self, email: str) -> Optional[str]:
        validate_email(email, 'account search')
        data = await self.transport.get('/account/search',
                                        params={'email': email})
        return (data or {}).get('accountId')

    # Logout.

    async def logout(self, account_id: str,
                     clear_client_account_state: bool = True) -> Any:
        account_id = self._id(account_id, 'logout')
        return await self.transport.get('/account/logout', params={
            'accountId': account_id,
            'clearClientAccountState': clear_client_account_state
        })

    async def logout_all(self, account_ids: List[str]) -> Any:
        ids = [self._id(a, 'logout all') for a in account_ids]
        return await self.transport.get('/account/logout/all',
                                        params={'accountIds': ids})
