"""Error taxonomy for the authentication core.

Every error carries a stable ``code`` that API clients branch on and the HTTP
status it maps to. Leaf components raise these; ``AuthService`` turns them
into ``(result, error)`` pairs or ``None`` so that "not logged in" never
escapes as an exception.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AuthError(Exception):
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class ConfigurationError(AuthError):
    code = "SERVICE_CONFIGURATION_ERROR"
    status_code = 500
    default_message = "Authentication service not configured"


class InvalidState(AuthError):
    code = "AUTH_INVALID_STATE"
    status_code = 400
    default_message = "Invalid OAuth state parameter"


class OAuthProviderError(AuthError):
    code = "AUTH_OAUTH_ERROR"
    status_code = 400
    default_message = "OAuth provider returned an error"


class TokenExchangeFailed(AuthError):
    code = "AUTH_TOKEN_EXCHANGE_FAILED"
    status_code = 502
    default_message = "Failed to exchange authorization code"


class UserInfoFailed(AuthError):
    code = "AUTH_USER_INFO_FAILED"
    status_code = 502
    default_message = "Failed to fetch user information"


class EmailNotVerified(AuthError):
    code = "AUTH_EMAIL_NOT_VERIFIED"
    status_code = 403
    default_message = "Email address is not verified"


class InvalidToken(AuthError):
    code = "AUTH_INVALID_TOKEN"
    status_code = 401
    default_message = "Invalid session"


class MalformedToken(InvalidToken):
    default_message = "Malformed token"


class InvalidSignature(InvalidToken):
    default_message = "Invalid token signature"


class TokenExpired(InvalidToken):
    code = "AUTH_TOKEN_EXPIRED"
    default_message = "Session expired"


class AuthenticationRequired(AuthError):
    code = "AUTH_MISSING_TOKEN"
    status_code = 401
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, *, redirect_to: str = "/auth/login"):
        super().__init__(message)
        self.redirect_to = redirect_to


class InsufficientPermissions(AuthError):
    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403
    default_message = "Admin access required"


class DatabaseError(AuthError):
    code = "DATABASE_QUERY_ERROR"
    status_code = 500
    default_message = "Database operation failed"
