"""
Error envelope schemas.

These mirror the bodies produced by
:func:`repokit.core.exceptions.add_exception_handlers` so hosts can document
the error contract of routes backed by a repository.
"""

from typing import List

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error envelope returned by all non-validation error handlers."""

    error: bool = Field(default=True, description="Always ``true`` for errors")
    message: str = Field(
        ..., description="Human-readable error description", examples=["No matching entity found"]
    )


class ValidationErrorDetail(BaseModel):
    """Single field-level validation failure."""

    field: str = Field(
        ...,
        description="Arrow-separated path to the invalid field",
        examples=["query -> rows"],
    )
    message: str = Field(
        ...,
        description="Explanation of the validation failure",
        examples=["Input should be greater than or equal to 1"],
    )


class ValidationErrorResponse(BaseModel):
    """Response body for 422 Unprocessable Entity (validation failure)."""

    error: bool = Field(default=True, description="Always ``true`` for errors")
    message: str = Field(default="Validation failed", description="Summary message")
    details: List[ValidationErrorDetail] = Field(..., description="Per-field validation failures")
