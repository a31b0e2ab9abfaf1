"""Exception hierarchy for the CloudPulse cost engine.

All core failures derive from CloudPulseError. NotFoundError and
ValidationError are caller errors surfaced by the HTTP layer as 4xx
responses; the remaining types are operational and are logged and isolated
by the scheduler and the notification dispatcher.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes carried by every CloudPulseError."""

    NOT_FOUND = "NOT_FOUND"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    CREDENTIALS_INVALID = "CREDENTIALS_INVALID"
    PROVIDER_UNSUPPORTED = "PROVIDER_UNSUPPORTED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    CHANNEL_DELIVERY_FAILED = "CHANNEL_DELIVERY_FAILED"


class CloudPulseError(Exception):
    """Base exception for all CloudPulse engine errors."""

    default_code: ErrorCode = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(CloudPulseError):
    """A referenced account, project or rule does not exist."""

    default_code = ErrorCode.NOT_FOUND


class AccountNotFoundError(NotFoundError):
    """The cloud account record backing a fetch is missing."""

    default_code = ErrorCode.ACCOUNT_NOT_FOUND


class ValidationError(CloudPulseError):
    """Malformed input rejected before persistence."""

    default_code = ErrorCode.INVALID_INPUT


class CredentialError(CloudPulseError):
    """Decrypted credentials are absent or unusable for this account."""

    default_code = ErrorCode.CREDENTIALS_INVALID


class UnsupportedProviderError(CloudPulseError):
    """The account's provider has no cost data source binding."""

    default_code = ErrorCode.PROVIDER_UNSUPPORTED


class ProviderFetchError(CloudPulseError):
    """The upstream cost data source failed (throttling, auth, timeout, bad payload)."""

    default_code = ErrorCode.PROVIDER_ERROR


class ChannelDeliveryError(CloudPulseError):
    """A single notification channel failed to deliver."""

    default_code = ErrorCode.CHANNEL_DELIVERY_FAILED
