"""
In-memory state for the session client.

:class:`AccountStore` holds one :class:`.AccountRecord` per account id, the
current :class:`.Session` and a global error slot. It never talks to the
network; orchestration layers fetch data and write the results here.

Records are replaced on every write rather than mutated in place, so a
record handed out by :meth:`AccountStore.get` is a stable snapshot.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel
from pytz import UTC

from .domain import Account, AccountRecord, LoadStatus, Session, \
    SessionAccountSummary

logger = logging.getLogger(__name__)

Listener = Callable[[str, Optional[str]], None]
"""Called with a scope (``account``, ``session`` or ``global``) and, for
``account``, the id that changed."""


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _merge(model: BaseModel, changes: Mapping[str, Any]) -> BaseModel:
    """Apply a partial, possibly nested, change set to a model."""
    data = model.model_dump()
    _deep_update(data, changes)
    return type(model).model_validate(data)


def _deep_update(target: Dict[str, Any], changes: Mapping[str, Any]) -> None:
    for key, value in changes.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


class SessionSlot(BaseModel):
    """The current session plus its load status."""

    data: Session = Session()
    status: LoadStatus = LoadStatus.IDLE
    error: Optional[str] = None
    last_updated: Optional[datetime] = None


class AccountStore:
    """Keyed cache of account records, the session, and error slots."""

    def __init__(self) -> None:
        self._records: Dict[str, AccountRecord] = {}
        self._session = SessionSlot()
        self._global_error: Optional[str] = None
        self._listeners: List[Listener] = []

    # Observers.

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, scope: str, account_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            listener(scope, account_id)

    def _put(self, record: AccountRecord) -> AccountRecord:
        self._records[record.id] = record
        self._notify('account', record.id)
        return record

    # Account records.

    def get(self, account_id: str) -> Optional[AccountRecord]:
        return self._records.get(account_id)

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._records

    def set_full(self, account_id: str, account: Account) -> AccountRecord:
        """Store a full account; always supersedes a summary-only record."""
        existing = self._records.get(account_id) \
            or AccountRecord(id=account_id)
        return self._put(existing.model_copy(update={
            'account': account,
            'summary': account.to_summary(),
            'status': LoadStatus.SUCCESS,
            'error': None,
            'last_updated': _now()
        }))

    def set_summary(self, account_id: str,
                    summary: SessionAccountSummary) -> Optional[AccountRecord]:
        """Store a summary, unless a full account is already held.

        Returns the new record, or ``None`` if nothing changed.
        """
        existing = self._records.get(account_id)
        if existing is not None and existing.is_full:
            logger.debug('Keeping full record for %s over summary', account_id)
            return None
        existing = existing or AccountRecord(id=account_id)
        return self._put(existing.model_copy(update={
            'summary': summary,
            'last_updated': _now()
        }))

    def update(self, account_id: str,
               changes: Mapping[str, Any]) -> Optional[AccountRecord]:
        """Apply a partial change to a held record.

        ``changes`` uses attribute names and may be nested, e.g.
        ``{'user_details': {'name': 'Jane'}}``. Does nothing if there is no
        data for ``account_id``; returns ``None`` in that case.
        """
        existing = self._records.get(account_id)
        if existing is None or not existing.has_data:
            return None
        if existing.account is not None:
            account = _merge(existing.account, changes)
            summary = account.to_summary()
        else:
            account = None
            summary_changes = dict(changes)
            if isinstance(summary_changes.get('user_details'), Mapping):
                summary_changes['user_details'] = {
                    k: v for k, v in summary_changes['user_details'].items()
                    if k in ('name', 'email', 'username', 'image_url')
                }
            summary_changes = {
                k: v for k, v in summary_changes.items()
                if k in SessionAccountSummary.model_fields
            }
            summary = _merge(existing.summary, summary_changes)
        return self._put(existing.model_copy(update={
            'account': account,
            'summary': summary,
            'last_updated': _now()
        }))

    def remove(self, account_id: str) -> bool:
        """Forget everything about ``account_id``, including disabled state."""
        if self._records.pop(account_id, None) is None:
            return False
        self._notify('account', account_id)
        return True

    def list_all(self) -> List[AccountRecord]:
        return list(self._records.values())

    def list_active(self) -> List[AccountRecord]:
        """Records with data that have not been disabled."""
        return [r for r in self._records.values()
                if not r.disabled and r.has_data]

    def list_disabled(self) -> List[AccountRecord]:
        return [r for r in self._records.values() if r.disabled]

    def missing(self, account_ids: List[str]) -> List[str]:
        """Ids with neither a summary nor a full account."""
        return [a for a in account_ids
                if a not in self._records or not self._records[a].has_data]

    def is_stale(self, account_id: str, max_age: float) -> bool:
        """True if there is no full account, or it is older than ``max_age``
        seconds."""
        record = self._records.get(account_id)
        if record is None or not record.is_full or record.last_updated is None:
            return True
        return _now() - record.last_updated > timedelta(seconds=max_age)

    # Client-only overlay.

    def disable(self, account_id: str) -> AccountRecord:
        existing = self._records.get(account_id) \
            or AccountRecord(id=account_id)
        return self._put(existing.model_copy(update={'disabled': True}))

    def enable(self, account_id: str) -> Optional[AccountRecord]:
        existing = self._records.get(account_id)
        if existing is None or not existing.disabled:
            return existing
        return self._put(existing.model_copy(update={'disabled': False}))

    def is_disabled(self, account_id: str) -> bool:
        record = self._records.get(account_id)
        return record is not None and record.disabled

    # Load status.

    def set_status(self, account_id: str, status: LoadStatus) -> AccountRecord:
        existing = self._records.get(account_id) \
            or AccountRecord(id=account_id)
        update: Dict[str, Any] = {'status': status}
        if status in (LoadStatus.LOADING, LoadStatus.UPDATING):
            update['error'] = None
        return self._put(existing.model_copy(update=update))

    def set_error(self, account_id: str, message: str) -> AccountRecord:
        """Record a failure for one account, keeping whatever data it had."""
        existing = self._records.get(account_id) \
            or AccountRecord(id=account_id)
        return self._put(existing.model_copy(update={
            'status': LoadStatus.ERROR,
            'error': message
        }))

    # Session.

    @property
    def session(self) -> SessionSlot:
        return self._session

    def set_session_status(self, status: LoadStatus) -> None:
        self._session = self._session.model_copy(update={
            'status': status,
            'error': None
        })
        self._notify('session')

    def replace_session(self, session: Session) -> Session:
        """Swap in a whole new session."""
        self._session = SessionSlot(data=session,
                                    status=LoadStatus.SUCCESS,
                                    last_updated=_now())
        self._notify('session')
        return session

    def fail_session(self, message: str) -> None:
        """Mark the session as failed, keeping the last good data."""
        self._session = self._session.model_copy(update={
            'status': LoadStatus.ERROR,
            'error': message
        })
        self._notify('session')

    # Global error.

    @property
    def global_error(self) -> Optional[str]:
        return self._global_error

    def set_global_error(self, message: Optional[str]) -> None:
        self._global_error = message
        self._notify('global')

    def clear_global_error(self) -> None:
        self.set_global_error(None)

    def clear(self) -> None:
        """Drop every record and reset the session in one step."""
        self._records = {}
        self._session = SessionSlot(data=Session.empty(),
                                    status=LoadStatus.IDLE,
                                    last_updated=_now())
        self._notify('session')
        self._notify('account')
