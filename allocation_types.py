"""
Type definitions for allocation results, validation reports and settings.
"""
from __future__ import annotations

from datetime import date
from typing import Dict, List, Literal, Optional, TypedDict


SkipReason = Literal[
    "no_items",
    "insufficient_stock",
    "container_unavailable",
    "write_failed",
    "lock_timeout",
]

SKIP_REASONS: tuple[str, ...] = (
    "no_items",
    "insufficient_stock",
    "container_unavailable",
    "write_failed",
    "lock_timeout",
)


class AllocationRow(TypedDict):
    """One order linked to a container during a run."""
    order_id: str
    external_number: str
    container_id: str
    container_code: str
    delivery_eta: Optional[date]


class SkippedRow(TypedDict):
    """One order that was left unallocated and the reason why.

    Reasons:
        - no_items: The order has no capacity-relevant line items
          (``detail`` says whether it had no items at all, only unnamed
          items, or only excluded add-ons). Never passed to an allocator.
        - insufficient_stock: No eligible container covers every required
          product. The order stays pending for a future run.
        - container_unavailable: There is no eligible (non-delivered)
          container at all.
        - write_failed: A container qualified but persisting the link failed.
        - lock_timeout: The candidate container stayed locked by another
          allocation past the configured timeout.
    """
    order_id: str
    external_number: str
    reason: SkipReason
    detail: str
    products_needed: Dict[str, int]


class ProductRemainingRow(TypedDict):
    product_key: str
    total_quantity: int
    remaining: int


class InventoryStatusRow(TypedDict):
    """Remaining capacity per product for one container at the end of a run."""
    container_id: str
    container_code: str
    eta: Optional[date]
    products: List[ProductRemainingRow]


class BatchSummary(TypedDict):
    """Aggregated counts for a batch run.

    ``skipped_reasons`` always carries every reason key (zero when unused) so
    reports can be compared run over run.
    """
    orders_considered: int
    frozen_orders_count: int
    eligible_containers_count: int
    allocated_count: int
    skipped_count: int
    skipped_reasons: Dict[str, int]
    total_allocated_quantity: int


class BatchResult(TypedDict):
    summary: BatchSummary
    allocations: List[AllocationRow]
    skipped: List[SkippedRow]
    inventory_status: List[InventoryStatusRow]


class SingleAllocationResult(TypedDict):
    """Outcome of placing one order.

    ``reason`` is ``None`` on success, ``"already_allocated"`` when the order
    was linked before the call (or by a concurrent call), ``"not_allocated"``
    when unlinking an order that had no container, otherwise a SkipReason.
    """
    order_id: str
    external_number: str
    allocated: bool
    container_id: Optional[str]
    container_code: Optional[str]
    delivery_eta: Optional[date]
    reason: Optional[str]
    detail: str


class CascadeResult(TypedDict):
    """Outcome of removing an order and replaying later orders of its container.

    ``regressed`` lists orders that were linked before the removal and could
    not be placed again; they are unallocated now.
    """
    removed_order_id: str
    action: Literal["deleted", "unlinked", "items_removed"]
    container_id: Optional[str]
    reconsidered: List[str]
    reallocated: List[AllocationRow]
    regressed: List[SkippedRow]
    container_remaining: List[ProductRemainingRow]


class ValidationIssue(TypedDict):
    """One (container, product) pair whose linked demand exceeds capacity."""
    container_id: str
    container_code: str
    product_key: str
    declared: bool
    total_quantity: int
    allocated_quantity: int
    over_allocated: int
    orders: List[str]


class ValidationReport(TypedDict):
    total_containers: int
    issues_found: int
    issues: List[ValidationIssue]
    has_more: bool
    message: str


class DisplacementPlan(TypedDict):
    """Read-only suggestion for clearing an over-allocated container."""
    container_id: str
    container_code: str
    solver_status: str
    unlink_order_ids: List[str]
    unlink_external_numbers: List[str]
    kept_order_ids: List[str]
    usage_after: Dict[str, int]
    capacity: Dict[str, int]


class DeliveryLookup(TypedDict):
    external_number: str
    order_id: str
    container_code: Optional[str]
    container_status: Optional[str]
    delivery_eta: Optional[date]


class AllocationSettings(TypedDict, total=False):
    """Runtime settings for allocation runs.

    All keys are optional; missing keys fall back to DEFAULT_SETTINGS.
        excluded_product_terms: Normalized substrings marking add-on items that
            occupy no container space.
        max_orders_per_issue: Cap on order numbers listed per validation issue.
        max_issues_reported: Cap on issues listed per validation report.
        lock_timeout_seconds: Wait limit for a per-container lock.
        solver_time_limit_seconds: CP-SAT wall clock limit for the
            displacement advisor.
    """
    excluded_product_terms: List[str]
    max_orders_per_issue: int
    max_issues_reported: int
    lock_timeout_seconds: float
    solver_time_limit_seconds: float


DEFAULT_SETTINGS: AllocationSettings = {
    "excluded_product_terms": ["draaifunctie", "turn function"],
    "max_orders_per_issue": 10,
    "max_issues_reported": 50,
    "lock_timeout_seconds": 30.0,
    "solver_time_limit_seconds": 10.0,
}


def resolve_settings(settings: Optional[AllocationSettings] = None) -> AllocationSettings:
    """Overlay ``settings`` on DEFAULT_SETTINGS (returns a new dict)."""
    merged: AllocationSettings = dict(DEFAULT_SETTINGS)  # type: ignore[assignment]
    merged["excluded_product_terms"] = list(DEFAULT_SETTINGS["excluded_product_terms"])
    if settings:
        merged.update(settings)
    return merged
