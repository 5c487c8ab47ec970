"""Error taxonomy and structured error responses.

Store-level failures are a closed family of exceptions tagged by ErrorKind.
The HTTP layer renders every error in one consistent JSON format.
"""

import enum
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("consenthub.errors")


class ErrorKind(str, enum.Enum):
    forbidden = "forbidden"
    conflict = "conflict"
    not_found = "not_found"
    transient = "transient"


class ConsentStoreError(Exception):
    """Base for every failure surfaced by the consent store."""

    kind: ErrorKind
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.transient

    def to_dict(self) -> dict:
        body = {"error_code": self.kind.value, "detail": self.message}
        if self.details:
            body["context"] = {k: str(v) for k, v in self.details.items()}
        return body


class ForbiddenError(ConsentStoreError):
    """The principal is not allowed to perform the operation on the record."""

    kind = ErrorKind.forbidden
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(ConsentStoreError):
    """The write collides with an existing row: a consent pair or an account email."""

    kind = ErrorKind.conflict
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(ConsentStoreError):
    kind = ErrorKind.not_found
    status_code = status.HTTP_404_NOT_FOUND


class TransientError(ConsentStoreError):
    """Storage or network unavailable. Callers may retry; the core never does."""

    kind = ErrorKind.transient
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


@asynccontextmanager
async def translate_db_errors(operation: str):
    """Map driver-level failures onto the store taxonomy."""
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(f"{operation} violates a database constraint") from exc
    except (OperationalError, InterfaceError) as exc:
        logger.warning("Storage unavailable during %s: %s", operation, exc)
        raise TransientError(f"Storage unavailable during {operation}") from exc


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(ConsentStoreError)
    async def store_exception_handler(request: Request, exc: ConsentStoreError):
        request_id = getattr(request.state, "request_id", None)
        content = {
            "error": True,
            "status_code": exc.status_code,
            "request_id": request_id,
        }
        content.update(exc.to_dict())
        headers = {"Retry-After": "5"} if exc.retryable else None
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": True,
                "status_code": exc.status_code,
                "detail": exc.detail,
                "request_id": request_id,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": True,
                "status_code": 422,
                "detail": "Validation error",
                "errors": exc.errors(),
                "request_id": request_id,
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.exception("Unhandled error request_id=%s", request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": True,
                "status_code": 500,
                "detail": "Internal server error",
                "request_id": request_id,
            },
        )
