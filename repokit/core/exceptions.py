"""
Repository exceptions and FastAPI exception handlers.

The repository raises only two errors of its own:

- :class:`InvalidArgumentError` when a required entity, criterion or
  collection is missing (raised before the session is touched).
- :class:`DetachedEntityError` when ``update``/``delete`` receive an
  instance that is not tracked by the repository's session.

Everything the store reports (``IntegrityError``, ``OperationalError``,
``NoResultFound``, ``MultipleResultsFound`` ...) propagates unchanged.

Hosts that expose repositories over HTTP can call
:func:`add_exception_handlers` so every error response follows::

    {
        "error": true,
        "message": "<human-readable description>"
    }
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import MultipleResultsFound, NoResultFound
from starlette.exceptions import HTTPException as StarletteHTTPException

from repokit.core.resilience import CircuitBreakerError

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────────────────
# Repository exceptions
# ────────────────────────────────────────────────────────────────────────────


class RepositoryError(Exception):
    """Base exception for all errors raised by repokit itself."""

    def __init__(self, status_code: int, message: str, details: Any = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidArgumentError(RepositoryError, ValueError):
    """A required argument was ``None`` or otherwise unusable (400)."""

    def __init__(self, argument: str, message: str | None = None):
        self.argument = argument
        super().__init__(
            status_code=400,
            message=message or f"Argument '{argument}' must not be None",
        )


class DetachedEntityError(RepositoryError):
    """The entity is not attached to the repository's session (409)."""

    def __init__(self, entity: Any):
        self.entity = entity
        super().__init__(
            status_code=409,
            message=(
                f"{type(entity).__name__} instance is not tracked by this session; "
                "load it through the repository first or use the key-based method"
            ),
        )


# ────────────────────────────────────────────────────────────────────────────
# FastAPI exception handler registration
# ────────────────────────────────────────────────────────────────────────────


def add_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers on a FastAPI application instance."""

    @app.exception_handler(RepositoryError)
    async def repository_exception_handler(
        request: Request, exc: RepositoryError
    ) -> JSONResponse:
        """Handle argument and tracking errors raised by repositories."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": True, "message": exc.message},
        )

    @app.exception_handler(NoResultFound)
    async def no_result_handler(request: Request, exc: NoResultFound) -> JSONResponse:
        """Exactly-one lookup matched nothing."""
        return JSONResponse(
            status_code=404,
            content={"error": True, "message": "No matching entity found"},
        )

    @app.exception_handler(MultipleResultsFound)
    async def multiple_results_handler(
        request: Request, exc: MultipleResultsFound
    ) -> JSONResponse:
        """Exactly-one lookup matched more than one row."""
        return JSONResponse(
            status_code=409,
            content={"error": True, "message": "More than one entity matched"},
        )

    @app.exception_handler(NotImplementedError)
    async def not_implemented_handler(
        request: Request, exc: NotImplementedError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=501,
            content={"error": True, "message": str(exc) or "Not implemented"},
        )

    @app.exception_handler(CircuitBreakerError)
    async def circuit_breaker_handler(
        request: Request, exc: CircuitBreakerError
    ) -> JSONResponse:
        """Database circuit is open: fail fast with 503 and a retry hint."""
        return JSONResponse(
            status_code=503,
            content={
                "error": True,
                "message": f"Service unavailable: '{exc.name}' circuit is open",
            },
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": True, "message": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return a 422 with one entry per failing field."""
        errors = []
        for err in exc.errors():
            loc = " -> ".join(str(part) for part in err["loc"])
            errors.append({"field": loc, "message": err["msg"]})
        return JSONResponse(
            status_code=422,
            content={"error": True, "message": "Validation failed", "details": errors},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s", request.method, request.url.path
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": True,
                "message": "Internal Server Error. Please contact support.",
            },
        )
