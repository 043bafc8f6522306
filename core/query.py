"""
core/query.py -- Search, filter, sort and paginate listings.

The dashboard lists users and roles with a free-text search box, a
"field:value" filter and clickable column sorts ("name:asc"). Instead of
reading arbitrary attributes by name, each entity publishes a FieldSet: an
explicit whitelist of searchable, sortable and filterable fields, each mapped
to a typed accessor. Unknown field names raise ValidationFailed rather than
silently comparing missing values.

Sorting is stable in both directions, so rows that compare equal keep their
input order. Missing values (None) sort after present values in ascending
order and before them in descending order.

Usage:
    params = ListParams(page=1, page_size=10, search="jo", sort="name:desc", filter="status:Active")
    page = paginate(principals, params, USER_FIELDS)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Sequence, TypeVar

from pydantic import BaseModel, Field

from core.errors import ValidationFailed

T = TypeVar("T")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class ListParams(BaseModel):
    """Paging, search, sort and filter parameters for a listing call.

    page_size has no upper bound here; paginate() receives the configured
    maximum and rejects anything above it.
    """

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1)
    search: str = ""
    sort: str = ""
    filter: str = ""


class Page(BaseModel, Generic[T]):
    """One page of a listing plus the total number of matching rows."""

    data: list[T]
    total: int
    page: int
    page_size: int


@dataclass(frozen=True)
class FieldSet(Generic[T]):
    """Whitelist of fields a listing may search, sort and filter on."""

    search: Sequence[Callable[[T], str]] = ()
    sortable: dict[str, Callable[[T], Any]] = field(default_factory=dict)
    filterable: dict[str, Callable[[T], Any]] = field(default_factory=dict)


def normalize_field_name(name: str) -> str:
    """Accept the dashboard's camelCase names ("lastLogin") as snake_case."""
    return _CAMEL_BOUNDARY.sub("_", name.strip()).lower()


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split_pair(raw: str, what: str) -> tuple[str, str]:
    name, sep, rest = raw.partition(":")
    if not name.strip():
        raise ValidationFailed(f"Malformed {what} expression: {raw!r}")
    return normalize_field_name(name), rest.strip() if sep else ""


def _apply_search(items: list[T], term: str, fields: FieldSet[T]) -> list[T]:
    term = term.strip().lower()
    if not term or not fields.search:
        return items
    return [item for item in items if any(term in _as_text(get(item)).lower() for get in fields.search)]


def _apply_filter(items: list[T], expr: str, fields: FieldSet[T]) -> list[T]:
    if not expr.strip():
        return items
    name, value = _split_pair(expr, "filter")
    getter = fields.filterable.get(name)
    if getter is None:
        raise ValidationFailed(f"Cannot filter on field {name!r}.")
    wanted = value.lower()
    return [item for item in items if _as_text(getter(item)).lower() == wanted]


def _apply_sort(items: list[T], expr: str, fields: FieldSet[T]) -> list[T]:
    if not expr.strip():
        return items
    name, order = _split_pair(expr, "sort")
    getter = fields.sortable.get(name)
    if getter is None:
        raise ValidationFailed(f"Cannot sort on field {name!r}.")
    order = order.lower() or "asc"
    if order not in ("asc", "desc"):
        raise ValidationFailed(f"Sort order must be 'asc' or 'desc', got {order!r}.")

    def key(item: T) -> tuple:
        value = getter(item)
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, str):
            value = value.lower()
        return (value is None, value)

    if order == "asc":
        return sorted(items, key=key)
    # reverse=True keeps equal elements in input order; missing values lead
    return sorted(items, key=key, reverse=True)


def paginate(items: Sequence[T], params: ListParams, fields: FieldSet[T], max_page_size: int = 100) -> Page[T]:
    """Filter, search, sort and slice items according to params.

    A page past the end yields an empty data list with the correct total.
    """
    if params.page_size > max_page_size:
        raise ValidationFailed(f"page_size cannot exceed {max_page_size}.")
    rows = _apply_search(list(items), params.search, fields)
    rows = _apply_filter(rows, params.filter, fields)
    rows = _apply_sort(rows, params.sort, fields)
    start = (params.page - 1) * params.page_size
    return Page[Any](
        data=rows[start : start + params.page_size],
        total=len(rows),
        page=params.page,
        page_size=params.page_size,
    )
