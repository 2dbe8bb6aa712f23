"""Read-only audit of the capacity invariant.

For every (container, product) the demand of all linked orders (their
surviving, non-excluded line items) must not exceed the declared capacity.
The allocator never breaks this by itself; the audit exists to catch drift
from edits that bypass it (manual relinking, capacity entries lowered after
allocation, products renamed on a manifest).

Issues are reported, never repaired: choosing which order to displace is an
operator decision (see ``displacement.suggest_displacement`` for a
suggestion).
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from allocation_types import AllocationSettings, ValidationIssue, ValidationReport
from datatypes import AllocationContext
from fifo_allocation import sort_containers_by_eta, sort_orders_fifo
from inventory import declared_totals
from ledger import Ledger
from requirements import extract_requirements

logger = logging.getLogger(__name__)

__all__ = ["find_over_allocations", "validate_allocation"]


def find_over_allocations(ledger: Ledger, ctx: AllocationContext, container_id: Optional[str] = None) -> List[ValidationIssue]:
    """Every over-allocated (container, product) pair, uncapped.

    Args:
        ledger: Ledger to audit; it is only read.
        ctx: Resolved run context (exclusions, id map, caps).
        container_id: Restrict the audit to one container.

    Returns:
        Issues ordered by container ETA then product key. ``orders`` holds
        contributing order numbers in FIFO order, capped at
        ``max_orders_per_issue``.
    """
    max_orders = int(ctx.settings.get("max_orders_per_issue", 10))
    containers = sort_containers_by_eta(ledger.containers())
    if container_id is not None:
        containers = [c for c in containers if c["id"] == container_id]
    totals = declared_totals(ledger.capacity_entries())

    demand: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    contributors: Dict[str, Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))
    for order in sort_orders_fifo(ledger.orders()):
        cid = order.get("container_id")
        if cid is None:
            continue
        for key, qty in extract_requirements(order.get("line_items") or [], ctx.exclusions, ctx.id_to_key).items():
            demand[cid][key] += qty
            contributors[cid][key].append(order["external_number"])

    issues: List[ValidationIssue] = []
    for container in containers:
        cid = container["id"]
        declared = totals.get(cid, {})
        for key in sorted(demand.get(cid, {})):
            allocated = demand[cid][key]
            total = declared.get(key, 0)
            if allocated <= total:
                continue
            issues.append({
                "container_id": cid,
                "container_code": container["code"],
                "product_key": key,
                "declared": key in declared,
                "total_quantity": total,
                "allocated_quantity": allocated,
                "over_allocated": allocated - total,
                "orders": contributors[cid][key][:max_orders],
            })
    return issues


def validate_allocation(ledger: Ledger, settings: Optional[AllocationSettings] = None) -> ValidationReport:
    """Audit all containers and build a bounded report.

    At most ``max_issues_reported`` issues are listed; ``issues_found`` and
    ``has_more`` tell whether the list was cut.
    """
    ctx = AllocationContext.from_settings(settings, ledger.capacity_entries())
    max_issues = int(ctx.settings.get("max_issues_reported", 50))
    issues = find_over_allocations(ledger, ctx)
    limited = issues[:max_issues]
    has_more = len(issues) > max_issues

    for issue in limited:
        logger.warning(
            "Over-allocation in %s for %r: %d linked vs %d declared (orders %s)",
            issue["container_code"], issue["product_key"], issue["allocated_quantity"],
            issue["total_quantity"], ", ".join(issue["orders"]),
        )
    if issues:
        message = f"Found {len(issues)} over-allocation issue(s)" + (f" (showing first {max_issues})" if has_more else "")
    else:
        message = "All containers are properly allocated"
    logger.info(message)

    return {
        "total_containers": len(ledger.containers()),
        "issues_found": len(issues),
        "issues": limited,
        "has_more": has_more,
        "message": message,
    }
