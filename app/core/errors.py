"""
SIWE authentication errors.

Every error carries a human-readable message that is safe to show to the
client, a stable code and the HTTP status the API answers with.

Taxonomy:
- ValidationError: malformed request shape (missing/invalid message or signature)
- ProtocolError: no pending challenge, domain/nonce mismatch, expired,
  not yet valid, missing required message fields
- SignatureError: the signature does not belong to the claimed address
- UserRejectedError: the key holder declined the signing request (client side)
- ConfigurationError: fatal misconfiguration, raised while the app is created
- TransientError: storage or network unavailable, the caller may retry
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class SiweAuthError(Exception):
    """Base exception for all authentication errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(SiweAuthError):
    """Raised when the request payload has the wrong shape."""

    def __init__(self, message: str):
        super().__init__(message, code="VALIDATION_ERROR")


class ProtocolError(SiweAuthError):
    """Raised when the signed message breaks a protocol rule."""

    def __init__(self, message: str):
        super().__init__(message, code="PROTOCOL_ERROR")


class SignatureError(SiweAuthError):
    """Raised when signature verification fails."""

    def __init__(self, message: str):
        super().__init__(message, code="SIGNATURE_ERROR")


class UserRejectedError(SiweAuthError):
    """Raised by wallet connectors when the user declines to sign."""

    def __init__(self, message: str = "User rejected the request."):
        super().__init__(message, code="USER_REJECTED")


class ConfigurationError(SiweAuthError):
    """Raised at startup when the configuration cannot be used."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message, code="CONFIGURATION_ERROR")


class TransientError(SiweAuthError):
    """Raised when a dependency (RPC node, backend) is unreachable."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message, code="TRANSIENT_ERROR")


async def siwe_exception_handler(request: Request, exc: SiweAuthError) -> JSONResponse:
    """Render authentication errors as ``{ok: false, error}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.message},
    )
