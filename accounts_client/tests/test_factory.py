"""Tests for :mod:`accounts_client.factory` and logging setup."""

import json
import logging
from io import StringIO
from unittest import TestCase

import pytest

from .. import app_logging, config
from ..factory import create_client, get_config
from ..services.transport import HttpTransport
from .util import FakeServer, make_account, make_client

CALLBACK = 'http://localhost:3000/auth/callback'


class TestGetConfig(TestCase):
    def test_defaults(self):
        settings = get_config()
        self.assertEqual(settings['TWO_FACTOR_MAX_ATTEMPTS'],
                         config.TWO_FACTOR_MAX_ATTEMPTS)
        self.assertNotIn('os', settings)

    def test_overrides(self):
        settings = get_config({'PERMISSION_RETRY_MAX': 1})
        self.assertEqual(settings['PERMISSION_RETRY_MAX'], 1)

    def test_default_transport(self):
        client = create_client({'BACKEND_URL': 'https://auth.example.com',
                                'PROXY_PATH': '/api/v1'})
        self.assertIsInstance(client.transport, HttpTransport)
        self.assertEqual(client.permissions.max_retries,
                         config.PERMISSION_RETRY_MAX)


class TestLogging(TestCase):
    def setUp(self):
        self.root = logging.getLogger()
        self.level = self.root.level

    def tearDown(self):
        self.root.removeHandler(self.handler)
        self.root.setLevel(self.level)

    def test_json_records(self):
        self.handler = app_logging.setup_logger('DEBUG', json=True)
        stream = StringIO()
        self.handler.setStream(stream)
        logging.getLogger('accounts_client.test').info('hello %s', 'there')
        record = json.loads(stream.getvalue().splitlines()[-1])
        self.assertEqual(record['message'], 'hello there')
        self.assertEqual(record['level'], 'INFO')
        self.assertIn('timestamp', record)

    def test_plain_records(self):
        self.handler = app_logging.setup_logger('DEBUG', json=False)
        stream = StringIO()
        self.handler.setStream(stream)
        logging.getLogger('accounts_client.test').warning('plain')
        self.assertIn('WARNING accounts_client.test plain', stream.getvalue())


@pytest.mark.asyncio
async def test_start_loads_session():
    server = FakeServer()
    server.add_account()
    client = make_client(server)

    assert await client.start() is None

    assert client.sessions.session.has_session
    assert len(server.calls_to('GET', '/session')) == 1


@pytest.mark.asyncio
async def test_start_handles_callback_first():
    """A callback that already loaded the session is not followed by a
    second load."""
    server = FakeServer()
    server.add_account(make_account('a9'))
    client = make_client(server, url=f'{CALLBACK}?code=LOCAL_SIGNIN_SUCCESS'
                                     '&accountId=a9')

    result = await client.start()

    assert result.success
    assert client.navigator.current_url() == CALLBACK
    assert len(server.calls_to('GET', '/session')) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_start_after_logout_callback_loads_session():
    """A logout callback only edits the local session, so the session is
    still loaded from the server."""
    server = FakeServer()
    server.add_account(make_account('a1'))
    server.add_account(make_account('a2'))
    server.session_ids.remove('a2')
    server.current = 'a1'
    client = make_client(server, url=f'{CALLBACK}?code=LOGOUT_SUCCESS'
                                     '&accountId=a2')

    result = await client.start()

    assert result.success
    assert len(server.calls_to('GET', '/session')) == 1
    assert client.sessions.session.account_ids == ['a1']
    assert client.sessions.session.current_account_id == 'a1'
    await client.aclose()
