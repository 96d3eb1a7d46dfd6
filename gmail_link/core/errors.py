from __future__ import annotations
from typing import Any, Dict, Optional

REAUTHORIZE_MESSAGE = "Gmail access is no longer valid. Please re-authorize your Gmail account."
RETRY_MESSAGE = "Gmail is temporarily unreachable. Please try again shortly."


class CredentialError(Exception):
    """
    Base for every failure raised by the credential core.

    `code` is the stable machine-readable identifier, `user_message` the text a
    human should see. `reauthorize` means only a fresh authorization run can fix
    it; `retryable` means the same call may succeed later.
    """
    code = "credential_error"
    status_code = 500
    reauthorize = False
    retryable = False
    default_message = "Credential operation failed"

    def __init__(self, message: Optional[str] = None, **data: Any):
        super().__init__(message or self.default_message)
        self.data: Dict[str, Any] = data

    @property
    def user_message(self) -> str:
        if self.reauthorize:
            return REAUTHORIZE_MESSAGE
        if self.retryable:
            return RETRY_MESSAGE
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "error_description": self.user_message,
            "reauthorize": self.reauthorize,
            "retryable": self.retryable,
        }


class NotConnected(CredentialError):
    code = "not_connected"
    status_code = 404
    default_message = "Gmail not connected. Connect a Gmail account first."

    @property
    def user_message(self) -> str:
        return str(self)


class AccountNotFound(CredentialError):
    code = "account_not_found"
    status_code = 404

    def __init__(self, email: str):
        super().__init__(f"Gmail account {email} is not connected", email=email)
        self.email = email


class InvalidState(CredentialError):
    code = "invalid_state"
    status_code = 400
    default_message = "Invalid or expired state parameter"


class InvalidScope(CredentialError):
    code = "invalid_scope"
    status_code = 400


class TokenExchangeError(CredentialError):
    code = "token_exchange_error"
    status_code = 502
    default_message = "Failed to exchange authorization code for tokens"


class ProfileFetchError(CredentialError):
    code = "profile_error"
    status_code = 502
    default_message = "Failed to get email address from Gmail"


class AccountRevoked(CredentialError):
    code = "account_revoked"
    status_code = 409
    reauthorize = True
    default_message = "Gmail access revoked"


class ProviderError(CredentialError):
    code = "provider_error"
    status_code = 503
    retryable = True
    default_message = "Google token endpoint unavailable"


class DecryptionError(CredentialError):
    code = "decryption_error"
    status_code = 500
    reauthorize = True
    default_message = "Stored credential could not be decrypted"


class InvariantViolation(CredentialError):
    code = "invariant_violation"
    status_code = 500
    default_message = "Credential storage invariant violated"
