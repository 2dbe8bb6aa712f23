"""Requirement extraction: order line items -> per-product capacity demand.

Product identity is matched by a normalized name rather than a strict id,
because orders and container manifests come in through different ingestion
paths that do not agree on product ids. ``normalize_product_key`` is the one
join key used everywhere; a line item's ``product_id`` is only consulted as a
first pass when it maps onto a known capacity entry.
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypedDict, Literal

from domain_types import CapacityEntry, LineItem, Order

__all__ = [
    "normalize_product_key",
    "normalize_exclusions",
    "is_excluded",
    "build_id_to_key",
    "extract_requirements",
    "classify_order",
    "Requirements",
    "OrderVerdict",
]

Requirements = Dict[str, int]

_WHITESPACE = re.compile(r"\s+")


def normalize_product_key(name: Optional[str]) -> Optional[str]:
    """Trim, lower-case and collapse internal whitespace.

    Returns None for missing or blank names.

    >>> normalize_product_key("  Lounge   Chair ")
    'lounge chair'
    """
    if name is None:
        return None
    key = _WHITESPACE.sub(" ", str(name).strip().lower())
    return key or None


def normalize_exclusions(terms: Iterable[str]) -> Tuple[str, ...]:
    out: List[str] = []
    for term in terms:
        key = normalize_product_key(term)
        if key and key not in out:
            out.append(key)
    return tuple(out)


def is_excluded(product_key: str, exclusions: Sequence[str]) -> bool:
    """True when the (normalized) key contains any exclusion term."""
    return any(term in product_key for term in exclusions)


def build_id_to_key(capacity_entries: Iterable[CapacityEntry]) -> Dict[str, str]:
    """Map product ids declared on capacity entries to their normalized keys.

    An id declared under two different names is ambiguous and is left out, so
    matching falls back to the item name.
    """
    mapping: Dict[str, str] = {}
    ambiguous: set[str] = set()
    for entry in capacity_entries:
        pid = entry.get("product_id")
        key = normalize_product_key(entry["product_key"])
        if not pid or key is None:
            continue
        pid = str(pid)
        if pid in mapping and mapping[pid] != key:
            ambiguous.add(pid)
        mapping[pid] = key
    for pid in ambiguous:
        mapping.pop(pid, None)
    return mapping


def _item_quantity(item: LineItem) -> int:
    qty = item.get("quantity")
    if qty is None:
        return 1  # upstream rows without a quantity represent a single unit
    return int(qty)


def _item_key(item: LineItem, id_to_key: Optional[Mapping[str, str]]) -> Optional[str]:
    pid = item.get("product_id")
    if id_to_key and pid is not None and str(pid) in id_to_key:
        return id_to_key[str(pid)]
    return normalize_product_key(item.get("product_key"))


def extract_requirements(
    line_items: Iterable[LineItem],
    exclusions: Sequence[str],
    id_to_key: Optional[Mapping[str, str]] = None,
) -> Requirements:
    """Sum required quantity per product key.

    Args:
        line_items: The order's surviving line items.
        exclusions: Normalized exclusion terms (see ``normalize_exclusions``).
        id_to_key: Optional product id -> capacity key map for strict-id matching.

    Returns:
        Mapping product_key -> required quantity. Excluded, unnamed and
        non-positive items contribute nothing.
    """
    required: Requirements = {}
    for item in line_items:
        key = _item_key(item, id_to_key)
        if key is None or is_excluded(key, exclusions):
            continue
        qty = _item_quantity(item)
        if qty <= 0:
            continue
        required[key] = required.get(key, 0) + qty
    return required


class OrderVerdict(TypedDict):
    """Result of ``classify_order``.

    ``allocatable`` is False exactly when ``requirements`` is empty; the
    ``detail`` then tells why (no_line_items / no_product_name /
    only_excluded_items / no_positive_quantity).
    """
    allocatable: bool
    requirements: Requirements
    reason: Optional[Literal["no_items"]]
    detail: str


def classify_order(
    order: Order,
    exclusions: Sequence[str],
    id_to_key: Optional[Mapping[str, str]] = None,
) -> OrderVerdict:
    items = order.get("line_items") or []
    requirements = extract_requirements(items, exclusions, id_to_key)
    if requirements:
        return {"allocatable": True, "requirements": requirements, "reason": None, "detail": ""}

    if not items:
        detail = "no_line_items"
    elif any(_item_key(it, id_to_key) is None for it in items):
        detail = "no_product_name"
    elif all(is_excluded(_item_key(it, id_to_key) or "", exclusions) for it in items):
        detail = "only_excluded_items"
    else:
        detail = "no_positive_quantity"
    return {"allocatable": False, "requirements": {}, "reason": "no_items", "detail": detail}
