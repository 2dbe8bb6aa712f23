"""
Inventory model: remaining capacity per (container, product) for one run.

Remaining capacity is never stored. A snapshot is derived from the declared
capacity entries minus the requirements of every order currently linked to
the container, and lives only for the duration of one allocation run.
``deduct`` mutates the snapshot alone; the ledger stays the source of truth.

Products consumed by linked orders but absent from a container's manifest
show up with a negative remaining value, which makes them visible in status
reports instead of silently disappearing.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from domain_types import CapacityEntry, Container, Order
from allocation_types import InventoryStatusRow, ProductRemainingRow
from requirements import Requirements, extract_requirements, normalize_product_key

logger = logging.getLogger(__name__)

__all__ = ["InventorySnapshot", "declared_totals", "container_remaining"]


def declared_totals(capacity_entries: Iterable[CapacityEntry]) -> Dict[str, Dict[str, int]]:
    """Group capacity entries as container_id -> product_key -> total quantity.

    Entries whose names normalize to the same key are summed.
    """
    totals: Dict[str, Dict[str, int]] = defaultdict(dict)
    for entry in capacity_entries:
        key = normalize_product_key(entry["product_key"])
        if key is None:
            continue
        cid = entry["container_id"]
        totals[cid][key] = totals[cid].get(key, 0) + int(entry.get("total_quantity") or 0)
    return dict(totals)


def container_remaining(
    container_id: str,
    capacity_entries: Iterable[CapacityEntry],
    orders: Iterable[Order],
    exclusions: Sequence[str],
    id_to_key: Optional[Mapping[str, str]] = None,
    exclude_order_ids: Iterable[str] = (),
) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Declared totals and remaining capacity for a single container.

    Used for the in-lock re-read before a link is written.
    """
    skip = set(exclude_order_ids)
    totals = declared_totals(e for e in capacity_entries if e["container_id"] == container_id).get(container_id, {})
    remaining = dict(totals)
    for order in orders:
        if order.get("container_id") != container_id or order["id"] in skip:
            continue
        for key, qty in extract_requirements(order.get("line_items") or [], exclusions, id_to_key).items():
            remaining[key] = remaining.get(key, 0) - qty
    return totals, remaining


class InventorySnapshot:
    """Per-run view of remaining capacity."""

    def __init__(self, totals: Dict[str, Dict[str, int]], remaining: Dict[str, Dict[str, int]]) -> None:
        self._totals = totals
        self._remaining = remaining

    @classmethod
    def build(
        cls,
        containers: Sequence[Container],
        capacity_entries: Iterable[CapacityEntry],
        orders: Iterable[Order],
        exclusions: Sequence[str],
        id_to_key: Optional[Mapping[str, str]] = None,
        exclude_order_ids: Iterable[str] = (),
    ) -> "InventorySnapshot":
        """Rebuild remaining capacity from the ledger contents.

        Args:
            containers: All known containers (eligibility is the allocator's concern).
            capacity_entries: Declared capacity rows.
            orders: All orders; only linked ones consume capacity.
            exclusions: Normalized exclusion terms.
            id_to_key: Optional product id -> key map (strict-id first pass).
            exclude_order_ids: Orders whose consumption is ignored, e.g. the
                order currently being decided.
        """
        skip = set(exclude_order_ids)
        known = {c["id"] for c in containers}
        all_totals = declared_totals(capacity_entries)
        totals = {cid: dict(all_totals.get(cid, {})) for cid in known}
        remaining = {cid: dict(products) for cid, products in totals.items()}

        for order in orders:
            cid = order.get("container_id")
            if cid is None or order["id"] in skip:
                continue
            if cid not in remaining:
                logger.debug("Order %s linked to unknown container %s; ignored", order.get("external_number"), cid)
                continue
            inv = remaining[cid]
            for key, qty in extract_requirements(order.get("line_items") or [], exclusions, id_to_key).items():
                if key not in inv and key not in totals[cid]:
                    logger.warning(
                        "Product %r linked in container %s but not declared in its capacity (order %s)",
                        key, cid, order.get("external_number"),
                    )
                inv[key] = inv.get(key, 0) - qty
        return cls(totals, remaining)

    def remaining(self, container_id: str, product_key: str) -> int:
        return self._remaining.get(container_id, {}).get(product_key, 0)

    def total(self, container_id: str, product_key: str) -> int:
        return self._totals.get(container_id, {}).get(product_key, 0)

    def fits(self, container_id: str, requirements: Requirements) -> bool:
        """True when every required product has remaining >= required and remaining > 0."""
        if not requirements:
            return False
        inv = self._remaining.get(container_id)
        if inv is None:
            return False
        for key, qty in requirements.items():
            available = inv.get(key, 0)
            if available <= 0 or available < qty:
                return False
        return True

    def deduct(self, container_id: str, requirements: Requirements) -> None:
        inv = self._remaining.setdefault(container_id, {})
        for key, qty in requirements.items():
            inv[key] = inv.get(key, 0) - qty

    def replace_container(self, container_id: str, totals: Dict[str, int], remaining: Dict[str, int]) -> None:
        """Swap in a freshly re-read view of one container."""
        self._totals[container_id] = dict(totals)
        self._remaining[container_id] = dict(remaining)

    def products_remaining(self, container_id: str) -> List[ProductRemainingRow]:
        totals = self._totals.get(container_id, {})
        inv = self._remaining.get(container_id, {})
        keys = sorted(set(totals) | set(inv))
        return [
            {"product_key": k, "total_quantity": totals.get(k, 0), "remaining": inv.get(k, 0)}
            for k in keys
        ]

    def status_rows(self, containers: Sequence[Container]) -> List[InventoryStatusRow]:
        return [
            {
                "container_id": c["id"],
                "container_code": c["code"],
                "eta": c.get("eta"),
                "products": self.products_remaining(c["id"]),
            }
            for c in containers
        ]
