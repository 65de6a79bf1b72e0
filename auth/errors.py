"""
auth/errors.py -- Typed failures raised by the security engine.

Every cryptographic and persistence failure is translated into one of these
at the component boundary; callers never see a raw sqlalchemy, cryptography
or binascii exception.

Client-facing messages are fixed per class. InvalidCredential in particular
uses one message for "unknown email", "wrong password", "bad signature" and
"unknown refresh token" so responses cannot be used to enumerate accounts.
The distinguishing detail lives in the log record, not the message.

Layer rule: no imports from other auth/ modules.
"""

from __future__ import annotations


class SecurityError(Exception):
    """Base class. code and status_code drive the HTTP error envelope."""

    code: str = "security_error"
    status_code: int = 500
    message: str = "Request could not be processed."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)
        # detail is for logs; only message is ever sent to clients.
        self.detail = detail


class MalformedInput(SecurityError):
    code = "malformed_input"
    status_code = 400
    message = "Malformed request."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail)
        # Input errors are the caller's own mistake, so the detail is safe to echo.
        if detail:
            self.message = detail


class MalformedToken(MalformedInput):
    code = "malformed_token"
    message = "Malformed token."

    def __init__(self, detail: str | None = None) -> None:
        SecurityError.__init__(self, detail)


class InvalidCredential(SecurityError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class InvalidSignature(InvalidCredential):
    code = "invalid_signature"
    message = "Invalid token."


class Expired(SecurityError):
    code = "expired"
    status_code = 401
    message = "Credential has expired."


class Revoked(SecurityError):
    code = "revoked"
    status_code = 401
    message = "Credential has been revoked."


class IntegrityError(SecurityError):
    """Authenticated decryption failed.

    Deliberately does not say whether the key was wrong or the data corrupt.
    """

    code = "integrity_error"
    status_code = 500
    message = "Stored secret could not be decrypted."


class ConfigurationError(SecurityError):
    code = "configuration_error"
    status_code = 500
    message = "Server authentication not configured."


class AccountDisabled(SecurityError):
    code = "account_disabled"
    status_code = 403
    message = "Account or organization is inactive."


class AlreadyExists(SecurityError):
    code = "already_exists"
    status_code = 409
    message = "Email already registered."


class RetryableError(SecurityError):
    """Rejection the client may retry after retry_after seconds."""

    status_code = 429

    def __init__(self, retry_after: int, detail: str | None = None) -> None:
        super().__init__(detail)
        self.retry_after = int(retry_after)


class RateLimited(RetryableError):
    code = "rate_limited"
    message = "Too many requests. Please slow down."


class AccountLocked(RetryableError):
    code = "account_locked"
    message = "Account temporarily locked due to too many failed login attempts. Please try again later."


class ServiceUnavailable(SecurityError):
    """The persistence collaborator failed. Operational, never attacker-driven."""

    code = "service_unavailable"
    status_code = 503
    message = "Authentication service temporarily unavailable."


class Unauthenticated(SecurityError):
    code = "unauthorized"
    status_code = 401
    message = "Authentication required."


class Forbidden(SecurityError):
    code = "forbidden"
    status_code = 403
    message = "Insufficient permissions."
