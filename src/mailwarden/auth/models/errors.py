"""Error taxonomy for OAuth flows and mail API invocations.

Every failure the core can produce maps onto one closed ``ErrorCategory``.
Exceptions carry their classification so the invocation layer can decide on
retries without relying on ``except`` ordering.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Closed set of failure categories."""

    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.QUOTA_EXCEEDED,
        ErrorCategory.TIMEOUT,
    }
)

_USER_MESSAGES = {
    ErrorCategory.CONFIGURATION: "The mail account is not configured correctly.",
    ErrorCategory.VALIDATION: "The request was rejected as invalid.",
    ErrorCategory.AUTHENTICATION: "The mail provider rejected the credentials.",
    ErrorCategory.NETWORK: "Could not reach the mail provider. "
    "Please try again shortly.",
    ErrorCategory.RATE_LIMIT: "The mail provider is rate limiting requests. "
    "Please try again shortly.",
    ErrorCategory.QUOTA_EXCEEDED: "The mail provider quota was exceeded. "
    "Please try again shortly.",
    ErrorCategory.TIMEOUT: "The operation timed out or was cancelled.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred.",
}

REAUTH_MESSAGE = "Your mail session has expired. Please sign in again."


def user_message(
    category: ErrorCategory, requires_reauthentication: bool = False
) -> str:
    """Return the user-facing message for a category."""
    if requires_reauthentication:
        return REAUTH_MESSAGE
    return _USER_MESSAGES[category]


@dataclass(frozen=True)
class ClassifiedError:
    """Result of classifying a failure.

    ``retry_after`` is a server supplied wait in seconds; ``detail`` keeps the
    provider's own wording for logs (never shown to users verbatim).
    """

    category: ErrorCategory
    human_message: str
    retryable: bool
    retry_after: float | None = None
    requires_reauthentication: bool = False
    status_code: int | None = None
    detail: str | None = None

    @classmethod
    def of(
        cls,
        category: ErrorCategory,
        *,
        detail: str | None = None,
        retry_after: float | None = None,
        requires_reauthentication: bool = False,
        status_code: int | None = None,
        human_message: str | None = None,
    ) -> ClassifiedError:
        return cls(
            category=category,
            human_message=human_message
            or user_message(category, requires_reauthentication),
            retryable=category in RETRYABLE_CATEGORIES,
            retry_after=retry_after,
            requires_reauthentication=requires_reauthentication,
            status_code=status_code,
            detail=detail,
        )

    def to_exception(self) -> MailwardenError:
        """Build the typed exception matching this classification."""
        error_cls = _EXCEPTIONS_BY_CATEGORY[self.category]
        message = self.detail or self.human_message
        if error_cls is AuthenticationError:
            error = AuthenticationError(
                message, requires_reauthentication=self.requires_reauthentication
            )
        elif issubclass(error_cls, RateLimitError):
            error = error_cls(message, retry_after=self.retry_after)
        else:
            error = error_cls(message)
        error._classified = self
        return error


class MailwardenError(Exception):
    """Base exception for all mailwarden errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, human_message: str | None = None):
        super().__init__(message)
        self.message = message
        self._human_message = human_message
        self._classified: ClassifiedError | None = None

    @property
    def retryable(self) -> bool:
        return self.classified.retryable

    @property
    def classified(self) -> ClassifiedError:
        if self._classified is None:
            self._classified = self._classify()
        return self._classified

    def _classify(self) -> ClassifiedError:
        return ClassifiedError.of(
            self.category, detail=self.message, human_message=self._human_message
        )


class ConfigurationError(MailwardenError):
    """Raised when client configuration is missing or invalid.

    ``missing_fields`` names the configuration keys that were empty.
    """

    category = ErrorCategory.CONFIGURATION

    def __init__(
        self,
        message: str,
        *,
        missing_fields: tuple[str, ...] = (),
        human_message: str | None = None,
    ):
        if missing_fields and human_message is None:
            human_message = (
                "Mail account configuration is missing: " + ", ".join(missing_fields)
            )
        super().__init__(message, human_message=human_message)
        self.missing_fields = missing_fields


class ValidationError(MailwardenError):
    """Raised when call input is malformed or the CSRF state does not match."""

    category = ErrorCategory.VALIDATION

    def __init__(
        self, message: str, *, csrf: bool = False, human_message: str | None = None
    ):
        super().__init__(message, human_message=human_message)
        self.csrf = csrf


class AuthenticationError(MailwardenError):
    """Raised when the provider rejects an authorization code or token.

    When ``requires_reauthentication`` is set, retrying cannot help and the
    full authorization flow has to start over.
    """

    category = ErrorCategory.AUTHENTICATION

    def __init__(
        self,
        message: str,
        *,
        requires_reauthentication: bool = False,
        human_message: str | None = None,
    ):
        super().__init__(message, human_message=human_message)
        self.requires_reauthentication = requires_reauthentication

    def _classify(self) -> ClassifiedError:
        return ClassifiedError.of(
            self.category,
            detail=self.message,
            requires_reauthentication=self.requires_reauthentication,
            human_message=self._human_message,
        )


class NetworkError(MailwardenError):
    """Raised when the provider cannot be reached."""

    category = ErrorCategory.NETWORK


class RateLimitError(MailwardenError):
    """Raised when the provider asks the client to slow down."""

    category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        human_message: str | None = None,
    ):
        super().__init__(message, human_message=human_message)
        self.retry_after = retry_after

    def _classify(self) -> ClassifiedError:
        return ClassifiedError.of(
            self.category,
            detail=self.message,
            retry_after=self.retry_after,
            human_message=self._human_message,
        )


class QuotaExceededError(RateLimitError):
    """Raised when a provider usage quota is exhausted."""

    category = ErrorCategory.QUOTA_EXCEEDED


class OperationTimeoutError(MailwardenError):
    """Raised when an operation timed out or was cancelled by the caller."""

    category = ErrorCategory.TIMEOUT


class UnknownProviderError(MailwardenError):
    """Raised for failures that could not be classified."""

    category = ErrorCategory.UNKNOWN


_EXCEPTIONS_BY_CATEGORY: dict[ErrorCategory, type[MailwardenError]] = {
    ErrorCategory.CONFIGURATION: ConfigurationError,
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.AUTHENTICATION: AuthenticationError,
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.RATE_LIMIT: RateLimitError,
    ErrorCategory.QUOTA_EXCEEDED: QuotaExceededError,
    ErrorCategory.TIMEOUT: OperationTimeoutError,
    ErrorCategory.UNKNOWN: UnknownProviderError,
}
