"""
HTTP transport to the account server.

Every response from the account server is wrapped in an envelope::

    {"success": true, "data": ...}
    {"success": false, "error": {"code": "...", "message": "..."}}

:class:`HttpTransport` unwraps it, returning ``data`` or raising
:class:`.TransportError`. Requests are one-shot; nothing here retries.
"""

import asyncio
import logging
from typing import Any, List, Mapping, Optional, Protocol, Tuple

import aiohttp

from ..exceptions import TransportError

logger = logging.getLogger(__name__)

NETWORK_ERROR = 'NETWORK_ERROR'
TIMEOUT_ERROR = 'TIMEOUT_ERROR'
SERVER_ERROR = 'SERVER_ERROR'
UNKNOWN_ERROR = 'UNKNOWN_ERROR'


class Transport(Protocol):
    """What the client needs from a transport."""

    async def get(self, path: str, body: Optional[Mapping] = None,
                  params: Optional[Mapping] = None) -> Any: ...

    async def post(self, path: str, body: Optional[Mapping] = None,
                   params: Optional[Mapping] = None) -> Any: ...

    async def patch(self, path: str, body: Optional[Mapping] = None,
                    params: Optional[Mapping] = None) -> Any: ...

    async def delete(self, path: str, body: Optional[Mapping] = None,
                     params: Optional[Mapping] = None) -> Any: ...


def encode_params(params: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """Flatten query parameters; list values repeat the key."""
    query: List[Tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if isinstance(item, bool):
                item = 'true' if item else 'false'
            query.append((key, str(item)))
    return query


def unwrap(payload: Any, status_code: int) -> Any:
    """Pull ``data`` out of a response envelope.

    Raises
    ------
    :class:`.TransportError`
        If the envelope reports failure, or the body is not an envelope and
        the status is not a success.
    """
    if isinstance(payload, dict) and 'success' in payload:
        if payload['success']:
            return payload.get('data')
        error = payload.get('error') or {}
        raise TransportError(
            error.get('code') or UNKNOWN_ERROR,
            error.get('message') or 'Request failed',
            status_code=status_code,
            data=error.get('details') or error.get('data') or payload
        )
    if status_code >= 400:
        raise TransportError(SERVER_ERROR, f'HTTP {status_code}',
                             status_code=status_code, data=payload)
    return payload


class HttpTransport:
    """Async JSON client for the account server.

    The underlying :class:`aiohttp.ClientSession` keeps the server's session
    cookies between calls; it is created lazily and must be closed with
    :meth:`close`.
    """

    def __init__(self, base_url: str, proxy_path: str = '',
                 timeout: float = 30,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.base_url = base_url.rstrip('/') + proxy_path.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={'Accept': 'application/json'}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session \
                and not self._session.closed:
            await self._session.close()

    async def request(self, method: str, path: str,
                      body: Optional[Mapping[str, Any]] = None,
                      params: Optional[Mapping[str, Any]] = None) -> Any:
        """Make a request and return the unwrapped ``data``."""
        url = f'{self.base_url}{path}'
        query = encode_params(params) if params else None
        logger.debug('%s %s', method, path)
        try:
            async with self._get_session().request(
                    method, url, json=body, params=query) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
                return unwrap(payload, response.status)
        except asyncio.TimeoutError as e:
            logger.warning('%s %s timed out', method, path)
            raise TransportError(TIMEOUT_ERROR, 'Request timed out') from e
        except aiohttp.ClientError as e:
            logger.warning('%s %s failed: %s', method, path, e)
            raise TransportError(NETWORK_ERROR,
                                 'Network error. Please check your '
                                 'connection.') from e

    async def get(self, path: str, body: Optional[Mapping] = None,
                  params: Optional[Mapping] = None) -> Any:
        return await self.request('GET', path, body, params)

    async def post(self, path: str, body: Optional[Mapping] = None,
                   params: Optional[Mapping] = None) -> Any:
        return await self.request('POST', path, body, params)

    async def patch(self, path: str, body: Optional[Mapping] = None,
                    params: Optional[Mapping] = None) -> Any:
        return await self.request('PATCH', path, body, params)

    async def delete(self, path: str, body: Optional[Mapping] = None,
                     params: Optional[Mapping] = None) -> Any:
        return await self.request('DELETE', path, body, params)
