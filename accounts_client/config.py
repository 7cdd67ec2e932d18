"""Client configuration."""
import os

#################### Remote session authority ####################
BACKEND_URL = os.environ.get('BACKEND_URL', 'http://localhost:7000')
"""Base URL of the account server.

All endpoint paths are appended to this, after `PROXY_PATH`.
"""

PROXY_PATH = os.environ.get('PROXY_PATH', '')
"""Path prefix when the account server sits behind a reverse proxy, e.g.
``/api/v1``. Empty by default."""

REQUEST_TIMEOUT = float(os.environ.get('REQUEST_TIMEOUT', '30'))
"""Total timeout in seconds for a single request to the account server.

This is the only timeout in the client; nothing above the transport sets
its own deadline."""

#################### Redirects ####################
FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')
"""Origin of the application embedding the client."""

CALLBACK_URL = os.environ.get('CALLBACK_URL', f'{FRONTEND_URL}/auth/callback')
"""URL the account server redirects back to after an OAuth round trip.

The outbound intent is appended to it as a query parameter."""

DEFAULT_LOGIN_REDIRECT_URL = os.environ.get(
    'DEFAULT_LOGIN_REDIRECT_URL',
    f'{FRONTEND_URL}/dashboard'
)
"""Where to send the user after a successful sign in, if no `next_page`
was requested."""

_relative_urls = r"(^\/(?:[^\/]+\/)*[^\/]*$)"
LOGIN_REDIRECT_REGEX = os.environ.get('LOGIN_REDIRECT_REGEX', _relative_urls)
"""Regex to check a requested `next_page`.

Only values that match are followed. The default allows relative URLs
only."""

#################### Two-factor ####################
TWO_FACTOR_MAX_ATTEMPTS = int(os.environ.get('TWO_FACTOR_MAX_ATTEMPTS', '5'))
"""Failed verifications allowed before the client locks further attempts."""

TWO_FACTOR_LOCKOUT_MS = int(os.environ.get('TWO_FACTOR_LOCKOUT_MS', '300000'))
"""How long, in milliseconds, the client refuses verification after the
attempts are used up. Purely a client-side throttle."""

#################### OAuth permission retry ####################
PERMISSION_RETRY_MAX = int(os.environ.get('PERMISSION_RETRY_MAX', '3'))
"""Retries allowed for a failed permission or reauthorize request."""

PERMISSION_RETRY_COOLDOWN_MS = int(
    os.environ.get('PERMISSION_RETRY_COOLDOWN_MS', '5000')
)
"""Minimum time, in milliseconds, between a failure and the next retry."""

#################### Accounts ####################
ACCOUNT_MAX_AGE = int(os.environ.get('ACCOUNT_MAX_AGE', '300'))
"""Seconds after which a cached full account is considered stale."""

STRICT_ACCOUNT_IDS = os.environ.get('STRICT_ACCOUNT_IDS', '0') == '1'
"""Require account ids to be 24 lowercase hex characters.

The reference deployment issues ids in that format, but ids are opaque to
the client so this is off by default."""

#################### Logging ####################
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOG_JSON = os.environ.get('LOG_JSON', '1') == '1'
"""Emit log records as JSON. Set to ``0`` for plain text."""
