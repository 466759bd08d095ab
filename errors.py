"""Domain exceptions and their FastAPI error handlers."""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ── Exception taxonomy ──────────────────────────────────────────────

class PetDanceError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return {"error": self.message}


class InvalidArgument(PetDanceError):
    """Bad style, id or body."""
    status_code = 400


class Unauthenticated(PetDanceError):
    """Missing or invalid credential or webhook signature."""
    status_code = 401


class Forbidden(PetDanceError):
    """Caller does not own the job."""
    status_code = 403


class NotFound(PetDanceError):
    status_code = 404


class FailedPrecondition(PetDanceError):
    """Job is in the wrong state for the requested transition."""
    status_code = 400

    def __init__(self, message: str, current_status=None):
        super().__init__(message)
        self.current_status = current_status

    def to_body(self) -> dict:
        body = super().to_body()
        if self.current_status is not None:
            body["status"] = getattr(self.current_status, "value", self.current_status)
        return body


class ResourceExhausted(PetDanceError):
    """Free-tier quota used up."""
    status_code = 429


class Unavailable(PetDanceError):
    """A dependent external service is down. Safe to retry."""
    status_code = 503


class InvalidUpstreamResponse(PetDanceError):
    """The inference provider sent something we cannot use."""
    status_code = 502


# ── Adapter-level failures, translated by the orchestrator ───────────

class StorageUnavailable(Exception):
    """Object storage is not configured or not reachable."""


class InferenceUnavailable(Exception):
    """The inference provider rejected or failed the request."""


class BillingUnavailable(Exception):
    """The billing API could not be reached or returned an error."""


class ResultFetchError(Exception):
    """The generated result could not be downloaded."""


class QuotaExceeded(Exception):
    """The free-tier window is full; raised while claiming a job start."""

    def __init__(self, used: int, limit: int):
        super().__init__(f"{used} of {limit} free jobs used")
        self.used = used
        self.limit = limit


class DuplicateExternalId(Exception):
    """The provider's prediction id already belongs to another job."""


# ── Error → HTTP mapping ────────────────────────────────────────────

async def _domain_error_handler(request: Request, exc: PetDanceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def register_error_handlers(app: FastAPI):
    """Register the exception handlers on the FastAPI app."""
    app.add_exception_handler(PetDanceError, _domain_error_handler)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {where} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"❌ Unhandled error: {exc}\n{traceback.format_exc()}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
