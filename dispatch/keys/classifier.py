"""Provider error text classification for credential rotation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class CredentialFailure(str, Enum):
    """Why a provider call failed, as far as the credential is concerned."""
    QUOTA_EXHAUSTED = "quota_exhausted"
    EXPIRED = "expired"
    INVALID_KEY = "invalid_key"
    UNKNOWN = "unknown"


class CredentialError(Exception):
    """Base class for failures attributed to an API key."""

    def __init__(self, message: str, key_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.key_id = key_id


class CredentialInvalidError(CredentialError):
    """The provider rejected the key itself."""


class CredentialQuotaExhaustedError(CredentialError):
    """The key hit its quota or rate limit."""


class CredentialExpiredError(CredentialError):
    """The key is past its expiry."""


# Checked in order; the first matching rule wins.
_RULES: Tuple[Tuple[Tuple[str, ...], CredentialFailure, str], ...] = (
    (("API_KEY_INVALID",), CredentialFailure.INVALID_KEY, "Invalid API key"),
    (("expired",), CredentialFailure.EXPIRED, "API key expired"),
    (("429", "Quota"), CredentialFailure.QUOTA_EXHAUSTED, "Quota exhausted"),
)

_ERROR_TYPES = {
    CredentialFailure.INVALID_KEY: CredentialInvalidError,
    CredentialFailure.EXPIRED: CredentialExpiredError,
    CredentialFailure.QUOTA_EXHAUSTED: CredentialQuotaExhaustedError,
}


@dataclass(frozen=True)
class FailureClassification:
    """Normalized classification of one provider error message."""
    reason: CredentialFailure
    message: str
    matched_pattern: Optional[str] = None

    @property
    def is_credential_failure(self) -> bool:
        return self.reason is not CredentialFailure.UNKNOWN

    def to_error(self, key_id: Optional[str] = None) -> Exception:
        """Build the exception matching this classification."""
        error_type = _ERROR_TYPES.get(self.reason)
        if error_type is None:
            return RuntimeError(self.message)
        return error_type(self.message, key_id=key_id)


def classify_provider_error(message: str) -> FailureClassification:
    """Map raw provider error text to a credential failure reason.

    Unrecognised messages come back as UNKNOWN with the original text so
    callers can show it unchanged.
    """
    text = message or ""
    for patterns, reason, friendly in _RULES:
        for pattern in patterns:
            if pattern in text:
                return FailureClassification(reason=reason, message=friendly, matched_pattern=pattern)
    return FailureClassification(reason=CredentialFailure.UNKNOWN, message=text)
