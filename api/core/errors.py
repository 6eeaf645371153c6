"""
Request-visible errors.

Every failure leaves the API as `{"Explanation": "..."}` with the status code
carried by the exception. Handlers are registered in `api/main.py`.
"""

from __future__ import annotations

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

GENERIC_INTERNAL_EXPLANATION = "Internal server error"


class RequestError(RuntimeError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, explanation: str) -> None:
        super().__init__(explanation)
        self.explanation = explanation


class BadRequestError(RequestError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(RequestError):
    status_code = status.HTTP_401_UNAUTHORIZED


class InternalError(RequestError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(explanation: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"Explanation": explanation})


async def request_error_handler(_: Request, exc: RequestError) -> JSONResponse:
    return error_response(exc.explanation, exc.status_code)


async def http_exception_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        explanation = "No such endpoint"
    elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        explanation = "Method not allowed"
    else:
        explanation = str(exc.detail)
    return error_response(explanation, exc.status_code)


async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_validation_failed errors=%s", exc.errors())
    return error_response("Invalid request parameters", status.HTTP_400_BAD_REQUEST)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_error method=%s path=%s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return error_response(GENERIC_INTERNAL_EXPLANATION, status.HTTP_500_INTERNAL_SERVER_ERROR)
