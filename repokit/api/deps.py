"""
FastAPI dependency factories.

Wire repositories to the request-scoped session from :func:`get_db`::

    ProductRepo = repository_dependency(ProductRepository, Product)

    @router.get("/products", responses=ERROR_RESPONSES)
    async def list_products(
        pagination: Pagination = Depends(pagination_params),
        repo: ProductRepository = Depends(ProductRepo),
    ) -> Page[Product]:
        return await repo.get_paged_list(pagination)
"""

from typing import Any, Callable, Dict, Type, TypeVar

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from repokit.core.config import settings
from repokit.db.session import get_db
from repokit.repositories.base import BaseRepository
from repokit.schemas.common import ErrorResponse, ValidationErrorResponse
from repokit.schemas.pagination import Pagination

RepoType = TypeVar("RepoType", bound=BaseRepository)

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Missing or invalid argument"},
    404: {"model": ErrorResponse, "description": "No matching entity"},
    409: {"model": ErrorResponse, "description": "Ambiguous match or detached entity"},
    422: {"model": ValidationErrorResponse, "description": "Validation error"},
    503: {"model": ErrorResponse, "description": "Database circuit open"},
}


def repository_dependency(
    repo_cls: Type[RepoType], model: type
) -> Callable[[AsyncSession], RepoType]:
    """Build a dependency yielding ``repo_cls(model, db)`` for the current request."""

    def _provide(db: AsyncSession = Depends(get_db)) -> RepoType:
        return repo_cls(model, db)

    _provide.__name__ = f"get_{model.__name__.lower()}_repository"
    return _provide


def pagination_params(
    page: int = Query(1, ge=1, description="1-based page number"),
    rows: int = Query(
        settings.DEFAULT_PAGE_SIZE,
        ge=1,
        le=settings.MAX_PAGE_SIZE,
        description="Page size",
    ),
) -> Pagination:
    """Read ``?page=&rows=`` into a :class:`Pagination`."""
    return Pagination(page=page, rows=rows)
