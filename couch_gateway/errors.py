# couch_gateway/errors.py
"""
Error taxonomy.  Every request-path failure is a ``GatewayError`` that
renders as ``{"error": <stable code>, "message": <text>}`` with its status.
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

log = logging.getLogger(__name__)


class GatewayError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def body(self) -> dict:
        return {"error": self.error, "message": self.message}

    def response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.body())


# ───── authentication ────────────────────────────────────────────────
class AuthError(GatewayError):
    """Bearer token missing, malformed, expired or rejected by the provider."""
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "unauthorized"
    message = "Unauthorized"
    reason = "missing"

    def __init__(self, reason: str | None = None, message: str | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(message)


class TokenExpired(AuthError):
    error = "token_expired"
    message = "Token expired. Please refresh."
    reason = "expired"

    def body(self) -> dict:
        return {**super().body(), "reason": self.reason}


class TokenInvalid(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "invalid_token"
    message = "Invalid token"
    reason = "invalid"


class VerifierUnavailable(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "auth_unavailable"
    message = "Token verification is temporarily unavailable"


# ───── gate / provisioning ───────────────────────────────────────────
class MethodNotAllowed(GatewayError):
    status_code = status.HTTP_405_METHOD_NOT_ALLOWED
    error = "method_not_allowed"
    message = "Method Not Allowed"


class InvalidSubject(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_subject"
    message = "Identity subject is malformed"


class ProvisioningFailed(GatewayError):
    error = "provisioning_failed"
    message = "Could not prepare database account"


# ───── proxy ─────────────────────────────────────────────────────────
class ProxyUpstreamError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "upstream_unavailable"
    message = "Database is unavailable"


class PathNotProxied(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "not_found"
    message = "Path is not served by the sync endpoint"


# ───── manual save ───────────────────────────────────────────────────
class InvalidDocument(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_document"
    message = "Request body must be a JSON object"


class SaveFailed(GatewayError):
    error = "save_failed"
    message = "Failed to save data"


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError):
        return exc.response()

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        # the server logs the traceback when ServerErrorMiddleware re-raises
        log.error("unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path)
        return GatewayError().response()
