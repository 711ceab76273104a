# enclave/errors.py
"""
Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to; the Flask error handlers in
``enclave.app`` turn them into ``{"success": false, "error": ...}`` bodies.
"""

from typing import Any, Dict, List, Optional


class EnclaveError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None,
                 details: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        if self.code:
            body["code"] = self.code
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(EnclaveError):
    status_code = 400
    default_message = "Validation failed"


class AuthenticationError(EnclaveError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(EnclaveError):
    status_code = 403
    default_message = "Insufficient access level"


class NotFoundError(EnclaveError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(EnclaveError):
    status_code = 409
    default_message = "Resource already exists"


class RateLimitError(EnclaveError):
    status_code = 429
    default_message = "Too many requests, please try again later"


class InternalError(EnclaveError):
    status_code = 500


# ---------- token / session errors ----------

class TokenExpired(AuthenticationError):
    default_message = "Token expired"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, code="TOKEN_EXPIRED")


class TokenInvalid(AuthenticationError):
    default_message = "Invalid token"


class InvalidCredentials(AuthenticationError):
    default_message = "Invalid credentials"


class AccountDeactivated(AuthenticationError):
    default_message = "Account is deactivated"


class InvalidRefreshToken(AuthenticationError):
    default_message = "Invalid refresh token"


class CurrentPasswordIncorrect(ValidationError):
    default_message = "Current password is incorrect"


# ---------- terminal / filesystem errors ----------

class SessionNotFound(NotFoundError):
    default_message = "Terminal session not found or inactive"


class NotFoundOrDenied(NotFoundError):
    default_message = "File not found or access denied"


class AlreadyExists(ConflictError):
    default_message = "File or directory already exists at this path"
