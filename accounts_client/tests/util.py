"""Helpers for testing against a simulated account server."""

import copy
import secrets
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from mimesis import Person

from ..exceptions import TransportError
from ..factory import AuthClient, create_client
from ..navigation import MemoryNavigator


def object_id() -> str:
    """An id in the reference deployment's format."""
    return secrets.token_hex(12)


def make_account(account_id: Optional[str] = None,
                 provider: Optional[str] = None,
                 two_factor: bool = False) -> Dict[str, Any]:
    """A full account as the server would send it."""
    person = Person()
    first_name, last_name = person.name(), person.surname()
    account = {
        'id': account_id or object_id(),
        'created': '2024-03-01T12:00:00Z',
        'updated': '2024-03-01T12:00:00Z',
        'accountType': 'oauth' if provider else 'local',
        'status': 'active',
        'userDetails': {
            'firstName': first_name,
            'lastName': last_name,
            'name': f'{first_name} {last_name}',
            'email': person.email(),
            'emailVerified': True,
        },
        'security': {
            'twoFactorEnabled': two_factor,
            'sessionTimeout': 3600,
            'autoLock': False,
        },
    }
    if provider:
        account['provider'] = provider
    return account


def summary_of(account: Dict[str, Any]) -> Dict[str, Any]:
    details = account['userDetails']
    summary = {
        'id': account['id'],
        'accountType': account['accountType'],
        'status': account['status'],
        'userDetails': {'name': details['name'], 'email': details['email']},
    }
    if 'provider' in account:
        summary['provider'] = account['provider']
    return summary


class Call(NamedTuple):
    method: str
    path: str
    body: Any
    params: Any


Response = Any
"""A value to return, an exception to raise, or a callable taking
``(body, params)`` and returning either."""


class FakeTransport:
    """Returns scripted responses and records every request."""

    def __init__(self) -> None:
        self.routes: Dict[tuple, List[Response]] = {}
        self.calls: List[Call] = []

    def on(self, method: str, path: str, *responses: Response) -> None:
        """Script responses for a route.

        Responses are used in order; the last one repeats.
        """
        self.routes[(method, path)] = list(responses)

    def calls_to(self, method: str, path: str) -> List[Call]:
        return [c for c in self.calls if c.method == method
                and c.path == path]

    async def _request(self, method: str, path: str, body: Any,
                       params: Any) -> Any:
        self.calls.append(Call(method, path, body, params))
        responses = self.routes.get((method, path))
        if not responses:
            raise TransportError('NOT_FOUND', f'No route {method} {path}',
                                 status_code=404)
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response) and not isinstance(response, Exception):
            response = response(body, params)
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)

    async def get(self, path, body=None, params=None):
        return await self._request('GET', path, body, params)

    async def post(self, path, body=None, params=None):
        return await self._request('POST', path, body, params)

    async def patch(self, path, body=None, params=None):
        return await self._request('PATCH', path, body, params)

    async def delete(self, path, body=None, params=None):
        return await self._request('DELETE', path, body, params)


class FakeServer(FakeTransport):
    """A transport backed by an in-memory session and account table.

    Session endpoints, account reads and logouts behave like the real
    server; anything else can be scripted with :meth:`on`.
    """

    def __init__(self) -> None:
        super().__init__()
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.session_ids: List[str] = []
        self.current: Optional[str] = None
        self.on('GET', '/session', self._session)
        self.on('GET', '/session/accounts', self._summaries)
        self.on('POST', '/session/current', self._set_current)
        self.on('POST', '/session/add', self._add)
        self.on('GET', '/account/logout', self._logout)
        self.on('GET', '/account/logout/all', self._logout_all)

    def add_account(self, account: Optional[Dict[str, Any]] = None,
                    logged_in: bool = True) -> Dict[str, Any]:
        account = account or make_account()
        self.accounts[account['id']] = account
        self.on('GET', f'/{account["id"]}/account', account)
        if logged_in:
            self.log_in(account['id'])
        return account

    def log_in(self, account_id: str) -> None:
        if account_id not in self.session_ids:
            self.session_ids.append(account_id)
        self.current = account_id

    def _session(self, body, params):
        return {'session': {
            'hasSession': bool(self.session_ids),
            'accountIds': list(self.session_ids),
            'currentAccountId': self.current,
            'isValid': bool(self.session_ids),
        }}

    def _summaries(self, body, params):
        ids = (params or {}).get('accountIds') or []
        return [summary_of(self.accounts[i]) for i in ids
                if i in self.accounts]

    def _set_current(self, body, params):
        account_id = body['accountId']
        if account_id not in self.session_ids:
            return TransportError('ACCOUNT_NOT_IN_SESSION',
                                  'Account not in session', status_code=400)
        self.current = account_id
        return {'message': 'Current account updated'}

    def _add(self, body, params):
        self.log_in(body['accountId'])
        return {'message': 'Account added'}

    def _logout(self, body, params):
        account_id = params['accountId']
        if account_id in self.session_ids:
            self.session_ids.remove(account_id)
        if self.current == account_id:
            self.current = self.session_ids[0] if self.session_ids else None
        return {'message': 'Logged out', 'accountId': account_id}

    def _logout_all(self, body, params):
        self.session_ids, self.current = [], None
        return {'message': 'Logged out of all accounts'}


def make_client(server: Optional[FakeTransport] = None,
                url: str = 'http://localhost:3000/',
                realtime: Any = None, overrides: Any = None,
                **settings: Any) -> AuthClient:
    """A client wired to a fake server and an in-memory location."""
    settings.setdefault('CALLBACK_URL', 'http://localhost:3000/auth/callback')
    settings.setdefault('DEFAULT_LOGIN_REDIRECT_URL', '/dashboard')
    return create_client(settings, transport=server or FakeServer(),
                         navigator=MemoryNavigator(url),
                         realtime=realtime, overrides=overrides)


def failing(code: str = 'NETWORK_ERROR', message: str = 'Network error',
            status_code: Optional[int] = None) -> Callable:
    """A response that raises a fresh :class:`.TransportError`."""
    def respond(body, params):
        return TransportError(code, message, status_code=status_code)
    return respond
