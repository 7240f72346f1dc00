"""
Paging schemas.

``Pagination`` is what a caller asks for; ``Page`` is what comes back.  The
total match count travels in the result, so the request object is never
written to.
"""

import math
from typing import Generic, List, TypeVar

from pydantic import BaseModel, ConfigDict, Field, computed_field

from repokit.core.config import settings

ItemType = TypeVar("ItemType")


class Pagination(BaseModel):
    """A 1-based page request."""

    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1, description="1-based page number")
    rows: int = Field(
        default=settings.DEFAULT_PAGE_SIZE,
        ge=1,
        le=settings.MAX_PAGE_SIZE,
        description="Page size",
    )

    @property
    def offset(self) -> int:
        """Rows to skip before this page starts."""
        return (self.page - 1) * self.rows


class Page(BaseModel, Generic[ItemType]):
    """One page of query results plus the unpaged match count."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: List[ItemType]
    total: int = Field(..., ge=0, description="Rows matching the query before paging")
    page: int = Field(..., ge=1)
    rows: int = Field(..., ge=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def pages(self) -> int:
        """Number of pages needed to cover ``total``."""
        return math.ceil(self.total / self.rows) if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages
