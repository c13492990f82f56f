"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM rows MUST inherit from BaseResponseSchema.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class PayoutResponse(BaseResponseSchema):
            reference: str
            amount: Decimal
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Base class for request bodies. Unknown fields are ignored."""
    model_config = ConfigDict(
        extra='ignore',
    )


def page_count(total: int, size: int) -> int:
    return (total + size - 1) // size if size else 0
