from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any


class UMSAdapterError(ValueError):
    pass


def parse_iso_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        # Tolerate full timestamps ("2025-01-01T00:00:00Z"); only the calendar date matters.
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def require_iso_date(value: Any, field: str) -> date:
    parsed = parse_iso_date(value)
    if parsed is None:
        raise UMSAdapterError(f"{field} missing or not an ISO date (YYYY-MM-DD).")
    return parsed


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Avoid float binary artifacts: go through str.
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if not s:
            return None
        try:
            return Decimal(s)
        except InvalidOperation:
            return None
    return None


def parse_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise UMSAdapterError(f"{field} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise UMSAdapterError(f"{field} must be an integer (got {value!r}).") from exc


def as_list(value: Any, field: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if not isinstance(value, list):
        raise UMSAdapterError(f"{field} must be a list.")
    return value
