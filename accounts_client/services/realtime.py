"""Contract for the real-time notification channel.

The channel itself lives outside this package; the client only asks it to
follow or stop following an account.
"""

import logging
from typing import Protocol, Set

logger = logging.getLogger(__name__)


class Realtime(Protocol):
    def subscribe(self, account_id: str) -> None: ...

    def unsubscribe(self, account_id: str) -> None: ...

    def is_connected(self) -> bool: ...


class NullRealtime:
    """Used when no channel is configured. Records what it was asked."""

    def __init__(self) -> None:
        self.subscribed: Set[str] = set()

    def subscribe(self, account_id: str) -> None:
        logger.debug('No realtime channel; not subscribing %s', account_id)
        self.subscribed.add(account_id)

    def unsubscribe(self, account_id: str) -> None:
        self.subscribed.discard(account_id)

    def is_connected(self) -> bool:
        return False
