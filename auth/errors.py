"""
auth/errors.py -- Error taxonomy for the identity core.

Every failure a caller can observe is one of these classes. Each carries a
stable machine-readable code and the HTTP status the API layer renders it
with, so api/main.py needs a single exception handler instead of per-route
translation. Messages are safe to show to clients: they never include
secrets, hashes, or whether an account exists behind a failed login.

Layer rule: no imports from api/. The status codes are plain ints, not
fastapi/starlette constants, so services stay framework-free.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class. Subclasses override code/status_code and a default message."""

    code = "identity_error"
    status_code = 400
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Conflict(IdentityError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists."


class NotFound(IdentityError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class InvalidArgument(IdentityError):
    code = "invalid_argument"
    status_code = 400
    default_message = "Invalid argument."


class InvalidOrExpired(IdentityError):
    code = "invalid_or_expired"
    status_code = 400
    default_message = "Invalid or expired token."


class AlreadyVerified(IdentityError):
    code = "already_verified"
    status_code = 400
    default_message = "Email is already verified."


class Unauthorized(IdentityError):
    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


class TokenExpired(Unauthorized):
    code = "token_expired"
    default_message = "Token has expired."


class TokenMalformed(Unauthorized):
    code = "token_malformed"
    default_message = "Invalid token."


class Forbidden(IdentityError):
    code = "forbidden"
    status_code = 403
    default_message = "Access denied."


class InvalidCode(IdentityError):
    code = "invalid_code"
    status_code = 400
    default_message = "Invalid verification code."


class NotEnabled(IdentityError):
    code = "two_factor_not_enabled"
    status_code = 400
    default_message = "Two-factor authentication is not enabled."


class DependencyError(IdentityError):
    """An outbound collaborator (mail transport, identity provider) failed."""

    code = "dependency_error"
    status_code = 502
    default_message = "An upstream service is unavailable."
