"""
Row-level field extraction for connector payloads.

Provider payloads name the same field differently (and nest it under
``properties`` or ``attributes``). Each extractor walks its candidate columns
in priority order and takes the first present, non-empty value from that row
alone.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from flask_app.models import SourceType

NESTED_KEYS = ("properties", "attributes")

ID_COLUMNS: dict[SourceType, tuple[str, ...]] = {
    SourceType.CRM: ("hs_object_id", "id", "vid", "contact_id"),
    SourceType.ECOM: ("id", "customer_id", "admin_graphql_api_id"),
    SourceType.EMAIL_PLATFORM: ("id", "profile_id", "external_id"),
}


def _lookup(row: Mapping[str, Any], column: str) -> Any:
    if column in row:
        return row[column]
    for nested in NESTED_KEYS:
        inner = row.get(nested)
        if isinstance(inner, Mapping) and column in inner:
            return inner[column]
    return None


def first_present(row: Mapping[str, Any], columns: Sequence[str]) -> str | None:
    """First non-empty value among ``columns``, stringified and stripped."""
    for column in columns:
        value = _lookup(row, column)
        if value is None or isinstance(value, (Mapping, list, tuple)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def extract_external_id(row: Mapping[str, Any], columns: Sequence[str]) -> str | None:
    """
    External id for one row, or ``None`` when the row carries none.

    Shopify-style global ids (``gid://shopify/Customer/123``) are reduced to
    their trailing numeric part.
    """
    value = first_present(row, columns)
    if value and value.startswith("gid://"):
        value = value.rsplit("/", 1)[-1] or None
    return value


def extract_mapping(row: Mapping[str, Any], columns: Sequence[str]) -> dict[str, Any] | None:
    for column in columns:
        value = _lookup(row, column)
        if isinstance(value, Mapping) and value:
            return dict(value)
    return None


def extract_int(row: Mapping[str, Any], columns: Sequence[str]) -> int:
    value = first_present(row, columns)
    if value is None:
        return 0
    try:
        return int(float(value))
    except ValueError:
        return 0


def extract_decimal(row: Mapping[str, Any], columns: Sequence[str]) -> Decimal | None:
    value = first_present(row, columns)
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None
