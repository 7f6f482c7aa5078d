"""
Client-side shaping of an already-fetched list.

Stages always run in the same order: filter, sort, head, then count (the
caller prints ``len()`` instead of the table when counting).
"""
from __future__ import annotations

import re
from typing import Any, Sequence

from .client import ValidationError

SEARCH_FIELDS = (
    "name",
    "title",
    "description",
    "shortDescription",
    "category",
    "slug",
    "productId",
    "id",
    "serviceType",
    "serviceCity",
    "serviceCountry",
)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def contains_query(item: dict[str, Any], query: str) -> bool:
    parts = [str(item[f]) for f in SEARCH_FIELDS if item.get(f) not in (None, "")]
    tags = item.get("tags")
    if isinstance(tags, list):
        parts.extend(str(t) for t in tags if t)
    return query.strip().lower() in " ".join(parts).lower()


def filter_items(items: Sequence[dict[str, Any]], query: str) -> list[dict[str, Any]]:
    return [it for it in items if contains_query(it, query)]


def parse_price(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        m = _NUMBER_RE.search(value.replace(",", ""))
        if m:
            return float(m.group(0))
    return None


def _sort_value(field: str, value: Any) -> tuple[int, float, str] | None:
    if field == "price":
        price = parse_price(value)
        return None if price is None else (0, price, "")
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, float(value), "")
    return (1, 0.0, str(value).lower())


def sort_items(items: Sequence[dict[str, Any]], spec: str) -> list[dict[str, Any]]:
    """
    ``spec`` is a field name, ``-field`` for descending. Ties keep their input
    order and items without the field go last in either direction.
    """
    field = spec.strip()
    descending = field.startswith("-")
    field = field.lstrip("-")
    if not field:
        raise ValidationError("--sort needs a field name, e.g. price or -price")

    keyed: list[tuple[tuple[int, float, str], dict[str, Any]]] = []
    missing: list[dict[str, Any]] = []
    for it in items:
        key = _sort_value(field, it.get(field))
        if key is None:
            missing.append(it)
        else:
            keyed.append((key, it))
    keyed.sort(key=lambda pair: pair[0], reverse=descending)
    return [it for _, it in keyed] + missing


def parse_head(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"--head must be a positive integer, got {value!r}") from None
    if n < 1:
        raise ValidationError(f"--head must be a positive integer, got {value!r}")
    return n


def head_items(items: Sequence[dict[str, Any]], n: int) -> list[dict[str, Any]]:
    return list(items[: parse_head(n)])


def run_pipeline(
    items: Sequence[dict[str, Any]],
    *,
    sort: str | None = None,
    head: int | None = None,
) -> list[dict[str, Any]]:
    result = list(items)
    if sort:
        result = sort_items(result, sort)
    if head is not None:
        result = head_items(result, head)
    return result
