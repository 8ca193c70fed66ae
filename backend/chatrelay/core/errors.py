from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ChatRelayError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(ChatRelayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Not authenticated"


class InvalidRequest(ChatRelayError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class UpstreamFailure(ChatRelayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Model provider request failed"


class PersistenceFailure(ChatRelayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Failed to persist message"


class DeprecatedOperation(ChatRelayError):
    status_code = status.HTTP_410_GONE
    default_detail = "This operation has been removed"


async def _chatrelay_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=headers)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies are InvalidRequest (400), not FastAPI's default 422.
    return JSONResponse(
        {"detail": InvalidRequest.default_detail, "errors": jsonable_encoder(exc.errors())},
        status_code=InvalidRequest.status_code,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatRelayError, _chatrelay_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
