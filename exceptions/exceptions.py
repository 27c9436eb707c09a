from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ResourceNotFoundError(LibraryException):
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class BookNotFoundError(ResourceNotFoundError):
    def __init__(self, book_id: str):
        super().__init__("Book", book_id)


class CopyNotFoundError(ResourceNotFoundError):
    def __init__(self, copy_id: str):
        super().__init__("Copy", copy_id)


class LoanNotFoundError(ResourceNotFoundError):
    def __init__(self, loan_id: str):
        super().__init__("Loan", loan_id)


class UserNotFoundError(ResourceNotFoundError):
    def __init__(self, user_id: str):
        super().__init__("User", user_id)


class NoCopiesAvailableError(LibraryException):
    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__("No copies available for this book")


class LoanAlreadyReturnedError(LibraryException):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__("Loan already returned")


class LoanNotOverdueError(LibraryException):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__("Only overdue loans can receive reminders")


class InvalidRequestError(LibraryException):
    pass


class AuthenticationError(LibraryException):
    status_code = 401


class PermissionDeniedError(LibraryException):
    status_code = 403


class InternalServerError(LibraryException):
    status_code = 500

    def __init__(self):
        super().__init__("An unexpected error occurred. Please contact support.")


def error_response(exc: LibraryException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Exception handlers
async def library_exception_handler(request: Request, exc: LibraryException):
    logger.error(
        f"{request.method} {request.url.path} failed ({exc.status_code}): {exc.message}"
    )
    return error_response(exc)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # raised by routing itself: unknown paths and unsupported methods
    logger.warning(f"{request.method} {request.url.path}: {exc.status_code} {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(
        ".".join(str(part) for part in error["loc"][1:]) or "body" for error in exc.errors()
    )
    return await library_exception_handler(
        request, InvalidRequestError(f"Invalid request: check {fields}")
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Stored document failed response validation: {exc.errors()}")
    return error_response(InternalServerError())


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return error_response(InternalServerError())


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(LibraryException, library_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
