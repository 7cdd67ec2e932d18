"""Page location handling.

The client never touches a browser directly. Anything that needs to read or
change the location goes through a :class:`Navigator`.
"""
import logging
import re
from typing import List, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


class Navigator(Protocol):
    def current_url(self) -> str: ...

    def assign(self, url: str) -> None:
        """Navigate away, adding a history entry."""

    def replace(self, url: str) -> None:
        """Change the location without adding a history entry."""


class MemoryNavigator:
    """A location held in memory, with its history."""

    def __init__(self, url: str = 'http://localhost/') -> None:
        self.history: List[str] = [url]

    def current_url(self) -> str:
        return self.history[-1]

    def assign(self, url: str) -> None:
        self.history.append(url)

    def replace(self, url: str) -> None:
        self.history[-1] = url


def query_string(url: str) -> str:
    return urlsplit(url).query


def strip_query(navigator: Navigator) -> None:
    """Remove the query string (and fragment) from the current location."""
    parts = urlsplit(navigator.current_url())
    if not parts.query and not parts.fragment:
        return
    navigator.replace(urlunsplit((parts.scheme, parts.netloc, parts.path,
                                  '', '')))


def good_next_page(next_page: Optional[str], default: str,
                   pattern: str) -> str:
    """Checks if a next_page is good and returns it.

    If not good, it will return the default.
    """
    good = (next_page and len(next_page) < 300 and
            (next_page == default or re.match(pattern, next_page)))
    if next_page and not good:
        logger.info('Ignoring redirect to %s', next_page)
    return next_page if good else default
