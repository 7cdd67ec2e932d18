"""Exceptions raised by the session client."""

from typing import Any, Dict, Optional


class ValidationError(RuntimeError):
    """An argument was rejected before any request was made."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class TransportError(RuntimeError):
    """The account server rejected a request, or could not be reached."""

    def __init__(self, code: str, message: str,
                 status_code: Optional[int] = None,
                 data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.data = data

    @property
    def field_errors(self) -> Dict[str, str]:
        """Per-field messages, when the server supplied them."""
        if isinstance(self.data, dict):
            errors = self.data.get('errors') or self.data.get('fieldErrors')
            if isinstance(errors, dict):
                return {str(k): str(v) for k, v in errors.items()}
        return {}

    def __repr__(self) -> str:
        return f'TransportError({self.code!r}, {self.message!r}, ' \
            f'status_code={self.status_code!r})'


class AuthenticationFailed(RuntimeError):
    """Failed to authenticate with the provided credentials."""

    def __init__(self, message: str,
                 field_errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}


class TwoFactorVerificationFailed(RuntimeError):
    """A second-factor code was not accepted."""

    def __init__(self, message: str, kind: str,
                 attempts_remaining: int) -> None:
        super().__init__(message)
        self.kind = kind
        self.attempts_remaining = attempts_remaining


class TwoFactorLockedOut(RuntimeError):
    """Too many failed second-factor attempts; verification is paused."""

    def __init__(self, message: str, seconds_remaining: float) -> None:
        super().__init__(message)
        self.seconds_remaining = seconds_remaining


class TwoFactorSessionExpired(RuntimeError):
    """There is no live second-factor challenge to verify against."""


class UnknownAccount(RuntimeError):
    """The account is not part of the current session."""


class AccountDisabled(RuntimeError):
    """The account has been disabled on this client."""


class RetryRejected(RuntimeError):
    """A retry of a failed request was refused."""


class RetryCooldown(RetryRejected):
    """A retry was attempted before the cooldown elapsed."""

    def __init__(self, message: str, seconds_remaining: float) -> None:
        super().__init__(message)
        self.seconds_remaining = seconds_remaining


class RetryLimitExceeded(RetryRejected):
    """No retries remain."""
