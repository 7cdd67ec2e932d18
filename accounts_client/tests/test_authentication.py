"""Tests for :mod:`accounts_client.authentication`."""

import asyncio
from datetime import datetime, timedelta
from unittest import TestCase

import jwt
import pytest
from pytz import UTC

from ..authentication import EXPIRED_SESSION, GENERIC, INVALID_CODE, \
    MALFORMED_REQUEST, classify_two_factor_error, token_expiry
from ..domain import AuthState
from ..exceptions import AuthenticationFailed, TransportError, \
    TwoFactorLockedOut, TwoFactorSessionExpired, \
    TwoFactorVerificationFailed, ValidationError
from .util import FakeServer, failing, make_client

CREDENTIALS = {'email': 'jane@example.com', 'password': 'hunter22'}
VERIFY = '/auth/verify-two-factor'


def temp_token(expires_in=600):
    exp = datetime.now(tz=UTC) + timedelta(seconds=expires_in)
    return jwt.encode({'exp': int(exp.timestamp()), 'purpose': '2fa'},
                      'not-a-real-secret', algorithm='HS256')


@pytest.fixture
def server():
    server = FakeServer()
    account = server.add_account(logged_in=False)
    server.account_id = account['id']
    return server


def requires_two_factor(server, token=None):
    server.on('POST', '/auth/login', {
        'accountId': server.account_id,
        'requiresTwoFactor': True,
        'tempToken': token or temp_token(),
    })


class TestClassify(TestCase):
    def test_kinds(self):
        cases = [
            (TransportError('NETWORK_ERROR', 'Token expired'), GENERIC),
            (TransportError('TIMEOUT_ERROR', 'Invalid code'), GENERIC),
            (TransportError('TOKEN_EXPIRED', 'Nope'), EXPIRED_SESSION),
            (TransportError('X', 'The session has expired'),
             EXPIRED_SESSION),
            (TransportError('INVALID_TOKEN', 'Nope', 401), INVALID_CODE),
            (TransportError('X', 'Incorrect code'), INVALID_CODE),
            (TransportError('X', 'Bad', 422), MALFORMED_REQUEST),
            (TransportError('VALIDATION_ERROR', 'Bad'), MALFORMED_REQUEST),
            (TransportError('SERVER_ERROR', 'Oops', 500), GENERIC),
        ]
        for error, kind in cases:
            self.assertEqual(classify_two_factor_error(error), kind,
                             msg=repr(error))


class TestTokenExpiry(TestCase):
    def test_reads_exp(self):
        token = jwt.encode({'exp': 2000000000}, 'secret', algorithm='HS256')
        self.assertEqual(token_expiry(token),
                         datetime.fromtimestamp(2000000000, tz=UTC))

    def test_no_exp(self):
        token = jwt.encode({'sub': 'a1'}, 'secret', algorithm='HS256')
        self.assertIsNone(token_expiry(token))

    def test_opaque_token(self):
        self.assertIsNone(token_expiry('opaque-temp-token'))


@pytest.mark.asyncio
async def test_login_without_second_factor(server):
    server.on('POST', '/auth/login', {'accountId': server.account_id,
                                      'name': 'Jane'})
    client = make_client(server)

    result = await client.auth.login(CREDENTIALS)

    assert result.account_id == server.account_id
    assert client.auth.state == AuthState.SUCCESS
    assert client.sessions.session.current_account_id == server.account_id
    assert client.store.get(server.account_id).is_full


@pytest.mark.asyncio
async def test_login_rejected(server):
    server.on('POST', '/auth/login', failing(
        'INVALID_CREDENTIALS', 'Invalid email or password', 401))
    client = make_client(server)

    with pytest.raises(AuthenticationFailed) as ctx:
        await client.auth.login(CREDENTIALS)

    assert str(ctx.value) == 'Invalid email or password'
    assert client.auth.state == AuthState.FAILED
    assert client.sessions.session.account_ids == []


@pytest.mark.asyncio
async def test_two_factor_wrong_code(server):
    """A rejected code uses one attempt and leaves the session alone."""
    requires_two_factor(server)
    server.on('POST', VERIFY, failing('INVALID_TOKEN', 'Invalid token', 401))
    client = make_client(server)

    result = await client.auth.login(CREDENTIALS)
    assert result.requires_two_factor
    assert client.auth.state == AuthState.REQUIRES_TWO_FACTOR
    assert client.auth.challenge.attempts_remaining == 5

    with pytest.raises(TwoFactorVerificationFailed) as ctx:
        await client.auth.verify_two_factor('123456')

    assert ctx.value.kind == INVALID_CODE
    assert ctx.value.attempts_remaining == 4
    assert client.auth.challenge.attempts_remaining == 4
    assert client.auth.state == AuthState.INVALID_TOKEN
    assert '4 attempts remaining' in client.auth.error
    assert server.calls_to('GET', '/session') == []


@pytest.mark.asyncio
async def test_two_factor_success(server):
    requires_two_factor(server)
    server.on('POST', VERIFY, {'accountId': server.account_id})
    client = make_client(server)

    await client.auth.login(CREDENTIALS)
    await client.auth.verify_two_factor('654321')

    assert client.auth.state == AuthState.SUCCESS
    assert client.auth.challenge is None
    assert client.sessions.session.current_account_id == server.account_id
    verify = server.calls_to('POST', VERIFY)[0]
    assert verify.body['token'] == '654321'


@pytest.mark.asyncio
async def test_lockout(server):
    """Once attempts run out the server is not asked again."""
    requires_two_factor(server)
    server.on('POST', VERIFY, failing('INVALID_TOKEN', 'Invalid token', 401))
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    for remaining in (4, 3, 2, 1):
        with pytest.raises(TwoFactorVerificationFailed) as ctx:
            await client.auth.verify_two_factor('000000')
        assert ctx.value.attempts_remaining == remaining
    with pytest.raises(TwoFactorLockedOut):
        await client.auth.verify_two_factor('000000')

    assert client.auth.state == AuthState.LOCKED_OUT
    assert client.auth.challenge.attempts_remaining == 0
    assert len(server.calls_to('POST', VERIFY)) == 5

    with pytest.raises(TwoFactorLockedOut) as ctx:
        await client.auth.verify_two_factor('000000')
    assert ctx.value.seconds_remaining > 0
    assert len(server.calls_to('POST', VERIFY)) == 5
    client.auth.dispose()


@pytest.mark.asyncio
async def test_lockout_expires(server):
    requires_two_factor(server)
    server.on('POST', VERIFY, failing('INVALID_TOKEN', 'Invalid token', 401))
    client = make_client(server, TWO_FACTOR_MAX_ATTEMPTS=1,
                         TWO_FACTOR_LOCKOUT_MS=20)
    await client.auth.login(CREDENTIALS)

    with pytest.raises(TwoFactorLockedOut):
        await client.auth.verify_two_factor('000000')
    await asyncio.sleep(0.1)

    assert client.auth.state == AuthState.IDLE
    assert client.auth.challenge.attempts_remaining == 1
    assert client.auth.challenge.locked_until is None


@pytest.mark.asyncio
async def test_server_says_expired(server):
    requires_two_factor(server)
    server.on('POST', VERIFY, failing('TOKEN_EXPIRED', 'Temp token expired',
                                      401))
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    with pytest.raises(TwoFactorSessionExpired):
        await client.auth.verify_two_factor('123456')

    assert client.auth.challenge is None
    assert client.auth.state == AuthState.EXPIRED_SESSION
    with pytest.raises(TwoFactorSessionExpired):
        await client.auth.verify_two_factor('123456')
    assert len(server.calls_to('POST', VERIFY)) == 1


@pytest.mark.asyncio
async def test_expired_temp_token_not_sent(server):
    requires_two_factor(server, temp_token(expires_in=-10))
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    with pytest.raises(TwoFactorSessionExpired):
        await client.auth.verify_two_factor('123456')

    assert client.auth.challenge is None
    assert server.calls_to('POST', VERIFY) == []


@pytest.mark.asyncio
async def test_malformed_code_uses_no_attempt(server):
    requires_two_factor(server)
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    for code in ('', '12345', 'abcdef', '1234567'):
        with pytest.raises(ValidationError):
            await client.auth.verify_two_factor(code)

    assert client.auth.challenge.attempts_remaining == 5
    assert server.calls_to('POST', VERIFY) == []


@pytest.mark.asyncio
async def test_backup_code_format(server):
    requires_two_factor(server)
    server.on('POST', VERIFY, failing('INVALID_CODE', 'Invalid code', 401))
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    with pytest.raises(TwoFactorVerificationFailed):
        await client.auth.verify_two_factor('ABCD-EFGH', is_backup_code=True)

    assert client.auth.error.startswith('Invalid backup code')


@pytest.mark.asyncio
async def test_network_failure_uses_attempt(server):
    requires_two_factor(server)
    server.on('POST', VERIFY, failing())
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    with pytest.raises(TwoFactorVerificationFailed) as ctx:
        await client.auth.verify_two_factor('123456')

    assert ctx.value.kind == GENERIC
    assert client.auth.challenge.attempts_remaining == 4
    assert client.auth.state == AuthState.FAILED


@pytest.mark.asyncio
async def test_new_login_discards_challenge(server):
    requires_two_factor(server)
    client = make_client(server)
    await client.auth.login(CREDENTIALS)
    old = client.auth.challenge

    await client.auth.login(CREDENTIALS)

    assert client.auth.challenge is not old
    assert client.auth.challenge.attempts_remaining == 5


@pytest.mark.asyncio
async def test_cancel(server):
    requires_two_factor(server)
    client = make_client(server)
    await client.auth.login(CREDENTIALS)

    client.auth.cancel_two_factor()

    assert client.auth.challenge is None
    assert client.auth.state == AuthState.IDLE


@pytest.mark.asyncio
async def test_two_factor_settings_reach_store(server):
    """Enabling, disabling and regenerating codes update the account."""
    client = make_client(server)
    account_id = server.account_id
    await client.accounts.fetch(account_id)
    server.on('POST', f'/{account_id}/auth/verify-two-factor-setup',
              {'message': 'Two-factor enabled'})
    server.on('POST', f'/{account_id}/auth/generate-backup-codes',
              {'backupCodes': ['a', 'b', 'c']})
    server.on('POST', f'/{account_id}/auth/setup-two-factor',
              {'message': 'Two-factor disabled'})

    await client.auth.verify_two_factor_setup(account_id, '123456')
    security = client.store.get(account_id).account.security
    assert security.two_factor_enabled

    await client.auth.generate_backup_codes(account_id, 'hunter22')
    assert client.store.get(account_id).account.security \
        .backup_codes_count == 3

    await client.auth.setup_two_factor(account_id, 'hunter22', enable=False)
    security = client.store.get(account_id).account.security
    assert not security.two_factor_enabled
    assert security.backup_codes_count == 0
    setup = server.calls_to('POST', f'/{account_id}/auth/setup-two-factor')
    assert setup[0].body == {'password': 'hunter22',
                             'enableTwoFactor': False}


@pytest.mark.asyncio
async def test_signup_errors_carry_fields(server):
    server.on('POST', '/auth/signup', TransportError(
        'VALIDATION_ERROR', 'Invalid input', 400,
        {'errors': {'email': 'Email already registered'}}))
    client = make_client(server)

    with pytest.raises(AuthenticationFailed) as ctx:
        await client.auth.signup({'email': 'jane@example.com',
                                  'password': 'hunter22',
                                  'confirmPassword': 'hunter22',
                                  'firstName': 'Jane', 'lastName': 'Roe'})

    assert ctx.value.field_errors == {'email': 'Email already registered'}
