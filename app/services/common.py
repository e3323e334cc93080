"""Common helper functions for the service layer.

This module provides reusable utilities for:
- Timezone normalization of stored timestamps
- Query ordering and pagination
- Currency formatting for customer-facing text
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query with validation.

    Args:
        query: SQLAlchemy query object
        order_by: Column name to order by
        order_dir: Direction ('asc' or 'desc')
        allowed_columns: Dict mapping column names to SQLAlchemy columns

    Returns:
        Query with ordering applied

    Raises:
        HTTPException: 400 if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def format_minor_amount(amount: int | None, currency: str | None) -> str:
    """Render a minor-unit amount as ``"12.50 USD"``."""
    major = (Decimal(amount or 0) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{major} {(currency or 'usd').upper()}"
