"""Core data structures for the session client."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, \
    model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for records exchanged with the account server.

    The server speaks camelCase; attributes are snake_case. Either form is
    accepted on construction.
    """

    model_config = ConfigDict(alias_generator=to_camel,
                              populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Render as a camelCase dict, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode='json')


class AccountType(str, Enum):
    LOCAL = 'local'
    OAUTH = 'oauth'


class AccountStatus(str, Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    UNVERIFIED = 'unverified'
    SUSPENDED = 'suspended'


class OAuthProvider(str, Enum):
    GOOGLE = 'google'
    MICROSOFT = 'microsoft'
    FACEBOOK = 'facebook'


class OAuthIntent(str, Enum):
    """Why the user is being sent to an OAuth provider."""

    SIGNUP = 'signup'
    SIGNIN = 'signin'
    PERMISSION = 'permission'
    REAUTHORIZE = 'reauthorize'


class AuthState(str, Enum):
    """States of an authentication operation."""

    IDLE = 'idle'
    AUTHENTICATING = 'authenticating'
    SUCCESS = 'success'
    REQUIRES_TWO_FACTOR = 'requires_two_factor'
    FAILED = 'failed'
    INVALID_TOKEN = 'invalid_token'
    EXPIRED_SESSION = 'expired_session'
    LOCKED_OUT = 'locked_out'


class LoadStatus(str, Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    UPDATING = 'updating'
    SUCCESS = 'success'
    ERROR = 'error'


class CallbackCode(str, Enum):
    """Outcome codes carried on a continuation URL."""

    OAUTH_SIGNIN_SUCCESS = 'oauth_signin_success'
    OAUTH_SIGNUP_SUCCESS = 'oauth_signup_success'
    OAUTH_PERMISSION_SUCCESS = 'oauth_permission_success'

    LOCAL_SIGNIN_SUCCESS = 'local_signin_success'
    LOCAL_SIGNUP_SUCCESS = 'local_signup_success'
    LOCAL_2FA_REQUIRED = 'local_2fa_required'
    LOCAL_EMAIL_VERIFIED = 'local_email_verified'
    LOCAL_PASSWORD_RESET_SUCCESS = 'local_password_reset_success'

    LOGOUT_SUCCESS = 'logout_success'
    LOGOUT_DISABLE_SUCCESS = 'logout_disable_success'
    LOGOUT_ALL_SUCCESS = 'logout_all_success'

    OAUTH_ERROR = 'oauth_error'
    LOCAL_AUTH_ERROR = 'local_auth_error'
    PERMISSION_ERROR = 'permission_error'
    INVALID_STATE = 'invalid_state'
    USER_NOT_FOUND = 'user_not_found'
    USER_EXISTS = 'user_exists'
    TOKEN_EXPIRED = 'token_expired'

    PERMISSION_REAUTHORIZE = 'permission_reauthorize'
    ACCOUNT_SELECTION_REQUIRED = 'account_selection_required'

    UNKNOWN = 'unknown'

    @classmethod
    def parse(cls, raw: str) -> 'CallbackCode':
        """Match a code by value or name, ignoring case.

        Anything unrecognized is :attr:`UNKNOWN`.
        """
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_error(self) -> bool:
        return self in ERROR_CODES


ERROR_CODES = frozenset([
    CallbackCode.OAUTH_ERROR,
    CallbackCode.LOCAL_AUTH_ERROR,
    CallbackCode.PERMISSION_ERROR,
    CallbackCode.INVALID_STATE,
    CallbackCode.USER_NOT_FOUND,
    CallbackCode.USER_EXISTS,
    CallbackCode.TOKEN_EXPIRED,
])


class UserDetails(WireModel):
    """Profile fields of an account."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: str = ''
    """Display name; built from first and last name by the server."""
    email: Optional[str] = None
    image_url: Optional[str] = None
    birthdate: Optional[str] = None
    username: Optional[str] = None
    email_verified: Optional[bool] = None


class SecuritySettings(WireModel):
    two_factor_enabled: bool = False
    backup_codes_count: Optional[int] = None
    session_timeout: int = 3600
    """Seconds of inactivity the server tolerates."""
    auto_lock: bool = False


class SummaryDetails(WireModel):
    name: str = ''
    email: Optional[str] = None
    username: Optional[str] = None
    image_url: Optional[str] = None


class SessionAccountSummary(WireModel):
    """Reduced projection of an :class:`Account`, returned with a session."""

    id: str
    account_type: AccountType = AccountType.LOCAL
    status: AccountStatus = AccountStatus.ACTIVE
    user_details: SummaryDetails = Field(default_factory=SummaryDetails)
    provider: Optional[OAuthProvider] = None


class Account(WireModel):
    """A full account record as held by the account server."""

    id: str
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    account_type: AccountType
    status: AccountStatus
    user_details: UserDetails
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    provider: Optional[OAuthProvider] = None

    def to_summary(self) -> SessionAccountSummary:
        """Project to the summary shown in account switchers."""
        details = self.user_details
        return SessionAccountSummary(
            id=self.id,
            account_type=self.account_type,
            status=self.status,
            user_details=SummaryDetails(
                name=details.name,
                email=details.email,
                username=details.username,
                image_url=details.image_url
            ),
            provider=self.provider
        )


class Session(WireModel):
    """The server's view of which accounts are logged in on this client.

    Every instance satisfies two rules: the current account is either
    ``None`` or one of ``account_ids``, and a session with no accounts has
    no session. Account ids keep their first-seen order and are never
    duplicated.
    """

    has_session: bool = False
    account_ids: List[str] = Field(default_factory=list)
    current_account_id: Optional[str] = None
    is_valid: bool = False

    @field_validator('account_ids')
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode='after')
    def _normalize(self) -> 'Session':
        if self.current_account_id not in self.account_ids:
            self.current_account_id = None
        if not self.account_ids:
            self.has_session = False
        return self

    @classmethod
    def empty(cls) -> 'Session':
        return cls()

    def has(self, account_id: str) -> bool:
        return account_id in self.account_ids

    def without(self, account_id: str) -> 'Session':
        """A copy with ``account_id`` dropped.

        If it was current, the first remaining account becomes current.
        """
        remaining = [a for a in self.account_ids if a != account_id]
        current = self.current_account_id
        if current == account_id:
            current = remaining[0] if remaining else None
        return Session(has_session=self.has_session and bool(remaining),
                       account_ids=remaining,
                       current_account_id=current,
                       is_valid=self.is_valid and bool(remaining))

    def with_current(self, account_id: Optional[str]) -> 'Session':
        return Session(has_session=self.has_session,
                       account_ids=list(self.account_ids),
                       current_account_id=account_id,
                       is_valid=self.is_valid)


class LoginResult(WireModel):
    """Response to a local login."""

    account_id: Optional[str] = None
    name: Optional[str] = None
    requires_two_factor: bool = False
    temp_token: Optional[str] = None
    message: Optional[str] = None


class TwoFactorSetup(WireModel):
    qr_code: Optional[str] = None
    secret: Optional[str] = None
    backup_codes: Optional[List[str]] = None
    message: Optional[str] = None


class TokenType(str, Enum):
    LOCAL_ACCESS = 'local_jwt'
    LOCAL_REFRESH = 'local_refresh_jwt'
    OAUTH_ACCESS = 'oauth_jwt'
    OAUTH_REFRESH = 'oauth_refresh_jwt'


class TokenInfo(WireModel):
    """What the server reports about one of an account's tokens.

    ``expires_at`` is in epoch milliseconds and ``time_remaining`` in
    milliseconds, as the server sends them.
    """

    model_config = ConfigDict(alias_generator=to_camel,
                              populate_by_name=True, extra='allow')

    is_valid: bool = False
    is_expired: bool = False
    type: Optional[TokenType] = None
    expires_at: Optional[int] = None
    time_remaining: Optional[int] = None
    account_id: Optional[str] = None
    error: Optional[str] = None


class TokenInformation(BaseModel):
    """Access and refresh token status for one account."""

    account_id: str
    access_token: Optional[TokenInfo] = None
    refresh_token: Optional[TokenInfo] = None


class TempAuthChallenge(BaseModel):
    """A pending second-factor challenge. At most one is live at a time."""

    temp_token: str
    issued_for_account_id: Optional[str] = None
    attempts_remaining: int
    max_attempts: int
    locked_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    """Expiry of the temp token, when it can be read from the token."""

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CallbackData(WireModel):
    """Decoded continuation parameters.

    Known fields are typed; anything else the server adds is kept as an
    extra attribute.
    """

    model_config = ConfigDict(alias_generator=to_camel,
                              populate_by_name=True, extra='allow')

    code: CallbackCode
    account_id: Optional[str] = None
    account_ids: List[str] = Field(default_factory=list)
    accounts: List[str] = Field(default_factory=list)
    name: Optional[str] = None
    provider: Optional[str] = None
    temp_token: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    clear_client_account_state: Optional[bool] = None
    service: Optional[str] = None
    scope_level: Optional[str] = None
    redirect_url: Optional[str] = None

    @field_validator('code', mode='before')
    @classmethod
    def _parse_code(cls, value: Any) -> CallbackCode:
        if isinstance(value, CallbackCode):
            return value
        return CallbackCode.parse(str(value))

    @property
    def oauth_provider(self) -> Optional[OAuthProvider]:
        if not self.provider:
            return None
        try:
            return OAuthProvider(self.provider.lower())
        except ValueError:
            return None


class AccountRecord(BaseModel):
    """Everything the client knows about one account id."""

    id: str
    account: Optional[Account] = None
    summary: Optional[SessionAccountSummary] = None
    status: LoadStatus = LoadStatus.IDLE
    error: Optional[str] = None
    last_updated: Optional[datetime] = None
    disabled: bool = False

    @property
    def is_full(self) -> bool:
        return self.account is not None

    @property
    def has_data(self) -> bool:
        return self.account is not None or self.summary is not None


class ContinuationResult(BaseModel):
    """What processing a continuation URL did."""

    code: CallbackCode
    success: bool
    account_id: Optional[str] = None
    message: Optional[str] = None
    redirect_url: Optional[str] = None
    """Where the caller should go next, if anywhere."""
    data: Optional[CallbackData] = None
