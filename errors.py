"""
API errors and the handlers that turn them into response envelopes.

Client errors render as ``{"status": "fail", "message": ...}``, server errors
as ``{"status": "error", "message": ...}``. Validation failures add an
``errors`` mapping of field name to messages.
"""

import logging
import traceback
from typing import Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def status(self) -> str:
        return "fail" if self.status_code < 500 else "error"


class BadRequest(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class Conflict(ApiError):
    status_code = 409


class ValidationFailed(BadRequest):
    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__("Validation failed")
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationFailed":
        return cls({field: [message]})


def _payload(exc: ApiError) -> dict:
    body = {"status": exc.status, "message": exc.message}
    if isinstance(exc, ValidationFailed):
        body["errors"] = exc.errors
    return body


async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=_payload(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        field = loc[-1] if loc else "body"
        errors.setdefault(field, []).append(err.get("msg", "Invalid value"))
    return JSONResponse(status_code=400, content=_payload(ValidationFailed(errors)))


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    details = exc.details or {}
    fields = list((details.get("keyValue") or details.get("keyPattern") or {}).keys())
    field = fields[0] if fields else "value"
    return JSONResponse(status_code=409, content=_payload(Conflict(f"Duplicate value for {field}")))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Can't find this route: {request.url.path}"
    else:
        message = str(exc.detail)
    status = "fail" if exc.status_code < 500 else "error"
    return JSONResponse(status_code=exc.status_code, content={"status": status, "message": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"status": "error", "message": "Something went wrong"}
    if config.is_development():
        body["message"] = str(exc) or exc.__class__.__name__
        body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
