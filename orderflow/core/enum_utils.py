"""
Enum helpers for VARCHAR status columns.

Status columns hold plain strings; the Python enums are the source of the
allowed values and are listed in each column's comment.
"""

from enum import Enum
from typing import Type


def enum_values(enum_class: Type[Enum]) -> list:
    """Get all values from an enum class."""
    return [e.value for e in enum_class]


def enum_comment(enum_class: Type[Enum]) -> str:
    """
    Generate a comment string for VARCHAR column.

    Use this in SQLAlchemy model column definitions.
    """
    return ", ".join(enum_values(enum_class))
