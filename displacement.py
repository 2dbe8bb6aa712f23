"""Displacement suggestions for over-allocated containers (Google OR-Tools CP-SAT).

The audit reports over-allocations but never repairs them. This module
proposes, for one container, which linked orders an operator could unlink so
that every product fits its declared capacity again. Nothing is written; the
operator applies a plan with ``unlink_order``.

Model
-----
* ``keep[o]`` (bool) for every order linked to the container.
* Capacity (hard): for every product p, ``sum(req[o,p] * keep[o]) <= cap[p]``;
  products missing from the manifest have ``cap = 0``.
* Objective: maximize ``sum(keep[o] * (A + B * rank[o] + qty[o]))`` where
  ``rank`` is higher for older orders and ``qty`` is the order's total
  capacity-relevant quantity. ``B`` exceeds the largest kept quantity and
  ``A`` exceeds every rank and quantity term together, so the tiers are
  strict: the fewest orders are displaced; among equally small sets the most
  recently created orders are displaced (FIFO fairness); remaining ties keep
  the larger quantity.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ortools.sat.python import cp_model

from allocation_types import AllocationSettings, DisplacementPlan
from allocation_errors import NothingToDisplaceError
from allocation_audit import find_over_allocations
from datatypes import AllocationContext
from fifo_allocation import sort_orders_fifo
from inventory import declared_totals
from ledger import Ledger
from requirements import extract_requirements

logger = logging.getLogger(__name__)

__all__ = ["suggest_displacement"]


def suggest_displacement(ledger: Ledger, container_id: str, settings: Optional[AllocationSettings] = None) -> DisplacementPlan:
    """Propose the orders to unlink from an over-allocated container.

    Args:
        ledger: Ledger to read; never written.
        container_id: Container reported by the audit.
        settings: Optional settings (``solver_time_limit_seconds``).

    Returns:
        DisplacementPlan with the orders to unlink (FIFO order), the orders
        kept, and the per-product usage once the plan is applied.

    Raises:
        ContainerNotFoundError: If the container is unknown.
        NothingToDisplaceError: If the container is not over-allocated.
    """
    container = ledger.get_container(container_id)
    ctx = AllocationContext.from_settings(settings, ledger.capacity_entries())
    if not find_over_allocations(ledger, ctx, container_id):
        raise NothingToDisplaceError(f"Container {container['code']} has no over-allocation to resolve")

    orders = sort_orders_fifo(ledger.linked_orders(container_id))
    reqs = [extract_requirements(o.get("line_items") or [], ctx.exclusions, ctx.id_to_key) for o in orders]
    capacity: Dict[str, int] = dict(declared_totals(ledger.capacity_for(container_id)).get(container_id, {}))
    products = sorted({k for r in reqs for k in r})
    for key in products:
        capacity.setdefault(key, 0)

    n = len(orders)
    model = cp_model.CpModel()
    keep = [model.NewBoolVar(f"keep_o{i}") for i in range(n)]

    # --- HARD CONSTRAINT: declared capacity per product ---
    for key in products:
        terms = [reqs[i][key] * keep[i] for i in range(n) if reqs[i].get(key, 0) > 0]
        if terms:
            model.Add(sum(terms) <= capacity[key])

    # rank: oldest order gets n, newest gets 1
    ranks = [n - i for i in range(n)]
    quantities = [sum(r.values()) for r in reqs]
    rank_weight = sum(quantities) + 1
    keep_weight = rank_weight * (sum(ranks) + 1)
    model.Maximize(sum(
        (keep_weight + rank_weight * ranks[i] + quantities[i]) * keep[i] for i in range(n)
    ))

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = float(ctx.settings.get("solver_time_limit_seconds", 10.0))
    status = solver.Solve(model)
    status_name = solver.StatusName(status)

    unlink: List[int] = []
    kept: List[int] = []
    if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        for i in range(n):
            (kept if solver.Value(keep[i]) else unlink).append(i)
    else:
        logger.error("Displacement model for %s not solved (status %s)", container["code"], status_name)

    usage: Dict[str, int] = {key: sum(reqs[i].get(key, 0) for i in kept) for key in products}
    logger.info(
        "Displacement suggestion for %s: unlink %d of %d order(s) (%s)",
        container["code"], len(unlink), n, status_name,
    )
    return {
        "container_id": container_id,
        "container_code": container["code"],
        "solver_status": status_name,
        "unlink_order_ids": [orders[i]["id"] for i in unlink],
        "unlink_external_numbers": [orders[i]["external_number"] for i in unlink],
        "kept_order_ids": [orders[i]["id"] for i in kept],
        "usage_after": usage,
        "capacity": {key: capacity[key] for key in products},
    }
