"""Route modules mounted under /api by api.main."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.sql.elements import ColumnElement


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Query datetimes without an offset are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> dict[str, Any]:
    """Success envelope: {"success": true, "data": ..., "message"?: ...}."""
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    body.update(extra)
    return body


def paginated(rows: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    return ok(
        rows,
        total=total,
        page=page,
        limit=limit,
        totalPages=math.ceil(total / limit) if limit else 0,
    )


def created_between(column, start: Optional[datetime], end: Optional[datetime]) -> list[ColumnElement]:
    """WHERE clauses for an optional [start, end] window on a timestamp column."""
    clauses: list[ColumnElement] = []
    if start is not None:
        clauses.append(column >= start)
    if end is not None:
        clauses.append(column <= end)
    return clauses
