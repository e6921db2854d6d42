"""Error taxonomy for the token lifecycle and polling pipeline."""

from enum import Enum
from typing import Any, Optional


class ErrorSeverity(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


class CgmLinkError(Exception):
    """Base class for pipeline errors.

    ``recoverable`` errors only cost the current poll cycle; everything else
    requires the user (or operator) to act before polling can resume.
    """

    recoverable = False
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Any = None,
        severity: Optional[ErrorSeverity] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details
        self.severity = severity or self.default_severity
        super().__init__(message)


class ConfigMissingError(CgmLinkError):
    """Provider client credentials or redirect URI are not configured."""

    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, missing: list):
        self.missing = list(missing)
        super().__init__(f"Dexcom API configuration missing: {', '.join(self.missing)}")


class UnauthenticatedError(CgmLinkError):
    """The caller's own session token is missing or invalid."""

    default_severity = ErrorSeverity.LOW


class ExchangeFailedError(CgmLinkError):
    """The provider rejected an authorization code."""

    default_severity = ErrorSeverity.HIGH


class RefreshInvalidError(CgmLinkError):
    """The stored refresh token is no longer usable; the user must re-authorize."""

    default_severity = ErrorSeverity.HIGH


class UnauthorizedError(CgmLinkError):
    """The data endpoint rejected the access token."""


class ProviderUnavailableError(CgmLinkError):
    """Network failure or 5xx from the provider."""

    recoverable = True
    default_severity = ErrorSeverity.LOW


class MalformedResponseError(CgmLinkError):
    """The provider payload did not match the expected schema."""

    recoverable = True


class TokenConflictError(CgmLinkError):
    """A conditional token write lost a race with a concurrent writer."""

    recoverable = True
    default_severity = ErrorSeverity.LOW


class TokenStoreError(CgmLinkError):
    """The token store failed to complete an operation."""

    default_severity = ErrorSeverity.HIGH


def is_recoverable(error: BaseException) -> bool:
    """Whether a poll cycle that failed with *error* may simply be skipped."""
    return isinstance(error, CgmLinkError) and error.recoverable
