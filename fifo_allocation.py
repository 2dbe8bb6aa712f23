"""FIFO order-to-container allocation under per-product capacity limits.

Overview
========
Every order is placed *whole* into a single container (all-or-nothing). An
order whose line items cannot all be covered by one container stays
unallocated; orders are never split across containers because their items
ship together.

Placement Rule
--------------
Applied once per order, strictly in creation order (``created_at`` ascending,
ties broken by arrival order in the ledger). Orders are never reordered to
obtain a better fit:

1. Scan eligible containers (status != ``delivered``) by ETA ascending; a
   container without ETA sorts after every dated one.
2. Pick the first container where, for every required product,
   ``remaining >= required`` and ``remaining > 0``.
3. On success link the order (``container_id``, ``delivery_eta`` = container
   ETA) and deduct its requirements from the run's snapshot.
4. Otherwise the order stays unallocated with reason ``insufficient_stock``
   (or ``container_unavailable`` when no eligible container exists at all).

Orders already linked to a container are frozen: a batch run only considers
unlinked orders, and their consumption is part of the snapshot.

Result Classification Semantics
-------------------------------
* ``allocations``: Orders linked during this run.
* ``skipped``: Orders left unallocated, with a reason:
    - ``no_items``: no capacity-relevant line items (never modeled).
    - ``insufficient_stock``: no eligible container covers all requirements.
    - ``container_unavailable``: there is no eligible container.
    - ``write_failed`` / ``lock_timeout``: a container qualified but the link
      could not be persisted. The rest of the batch continues.

Concurrency
-----------
The snapshot is built once per run. Before a link is written, the candidate
container's lock is taken and that container's remaining capacity is re-read
from the ledger; the order is linked only if it still fits. A racing
single-order allocation therefore cannot push the container past its
declared capacity, and containers that are not candidates are never blocked.

Incremental Allocation
----------------------
``allocate_single`` applies the same rule to one order against a snapshot
rebuilt from scratch (every linked order consumes capacity, only the order
being placed is excluded). Replaying it over all orders in creation order
produces the same mapping as one ``allocate_batch`` run.

Complexity is O(orders x containers x products per order); runs are operator
triggered batches over at most a few thousand orders.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from domain_types import Container, Order
from allocation_types import (
  SKIP_REASONS,
  AllocationRow,
  AllocationSettings,
  BatchResult,
  SingleAllocationResult,
  SkippedRow,
)
from allocation_errors import ConcurrentModificationError, LedgerWriteError, OrderNotFoundError
from datatypes import AllocationContext
from inventory import InventorySnapshot, container_remaining
from ledger import Ledger
from requirements import Requirements, classify_order

logger = logging.getLogger(__name__)

__all__ = [
  "sort_orders_fifo",
  "eligible_containers",
  "sort_containers_by_eta",
  "place_order",
  "allocate_batch",
  "allocate_single",
]


def sort_orders_fifo(orders: Sequence[Order]) -> List[Order]:
  """Orders by ``created_at`` ascending; ties keep their arrival order."""
  indexed = list(enumerate(orders))
  indexed.sort(key=lambda pair: (pair[1]["created_at"], pair[0]))
  return [o for _idx, o in indexed]


def sort_containers_by_eta(containers: Sequence[Container]) -> List[Container]:
  """ETA ascending, missing ETA last (treated as +infinity), stable otherwise."""
  indexed = list(enumerate(containers))
  indexed.sort(key=lambda pair: (pair[1].get("eta") is None, pair[1].get("eta") or date.max, pair[0]))
  return [c for _idx, c in indexed]


def eligible_containers(containers: Sequence[Container]) -> List[Container]:
  """Containers open for allocation (not delivered), in ETA order."""
  return sort_containers_by_eta([c for c in containers if c.get("status") != "delivered"])


def _skipped(order: Order, reason: str, detail: str, requirements: Requirements) -> SkippedRow:
  return {
    "order_id": order["id"],
    "external_number": order["external_number"],
    "reason": reason,  # type: ignore[typeddict-item]
    "detail": detail,
    "products_needed": dict(requirements),
  }


def place_order(
  order: Order,
  requirements: Requirements,
  eligible: Sequence[Container],
  snapshot: InventorySnapshot,
  ledger: Ledger,
  ctx: AllocationContext,
) -> Tuple[Optional[AllocationRow], Optional[SkippedRow]]:
  """Apply the placement rule to one allocatable order.

  At most one of the returned values is not None; both are None when a
  concurrent call linked or removed the order first. The snapshot is deducted
  only after the link was persisted.
  """
  if not eligible:
    return None, _skipped(order, "container_unavailable", "no container open for allocation", requirements)

  for container in eligible:
    cid = container["id"]
    if not snapshot.fits(cid, requirements):
      continue
    try:
      with ledger.container_lock(cid, ctx.lock_timeout):
        try:
          current = ledger.get_order(order["id"])
        except OrderNotFoundError:
          logger.info("Order %s was removed during allocation; skipped", order["external_number"])
          return None, None
        if current.get("container_id") is not None:
          logger.info("Order %s was linked by a concurrent allocation; left as is", order["external_number"])
          return None, None
        totals, fresh = container_remaining(
          cid,
          ledger.capacity_for(cid),
          ledger.linked_orders(cid),
          ctx.exclusions,
          ctx.id_to_key,
          exclude_order_ids=(order["id"],),
        )
        snapshot.replace_container(cid, totals, fresh)
        if not snapshot.fits(cid, requirements):
          logger.info(
            "Container %s changed since the snapshot; order %s no longer fits there",
            container["code"], order["external_number"],
          )
          continue
        ledger.set_order_link(order["id"], cid, container.get("eta"))
        snapshot.deduct(cid, requirements)
    except ConcurrentModificationError as exc:
      logger.warning("Order %s not placed: %s", order["external_number"], exc)
      return None, _skipped(order, "lock_timeout", str(exc), requirements)
    except LedgerWriteError as exc:
      logger.error("Order %s not placed: writing link to %s failed: %s", order["external_number"], container["code"], exc)
      return None, _skipped(order, "write_failed", str(exc), requirements)

    logger.debug("Order %s -> container %s (eta %s)", order["external_number"], container["code"], container.get("eta"))
    return {
      "order_id": order["id"],
      "external_number": order["external_number"],
      "container_id": cid,
      "container_code": container["code"],
      "delivery_eta": container.get("eta"),
    }, None

  return None, _skipped(
    order,
    "insufficient_stock",
    "no eligible container covers: " + ", ".join(sorted(requirements)),
    requirements,
  )


def allocate_batch(ledger: Ledger, settings: Optional[AllocationSettings] = None) -> BatchResult:
  """
  Allocate every unlinked order, oldest first, to the earliest-ETA container
  able to hold all of its products.

  The run is synchronous and idempotent: running it again without data
  changes allocates nothing further, because every previously skipped order
  meets the same remaining capacity again.

  Args:
    ledger: Source of containers, capacity entries and orders; receives links.
    settings: Optional AllocationSettings (exclusion terms, lock timeout).

  Returns:
    BatchResult dict with keys:
      summary: Counts, skip reason histogram and allocated quantity.
      allocations: Orders linked in this run.
      skipped: Orders left unallocated, with reasons and products needed.
      inventory_status: Remaining capacity per container/product after the run.

  Notes:
    * One order's failure (including a failed write) never aborts the rest.
    * Linked orders are frozen and only count as consumed capacity.
  """
  containers = ledger.containers()
  capacity = ledger.capacity_entries()
  orders = ledger.orders()
  ctx = AllocationContext.from_settings(settings, capacity)

  snapshot = InventorySnapshot.build(containers, capacity, orders, ctx.exclusions, ctx.id_to_key)
  eligible = eligible_containers(containers)

  pending = [o for o in sort_orders_fifo(orders) if o.get("container_id") is None]
  frozen_count = len(orders) - len(pending)
  logger.info(
    "Batch allocation started: %d unlinked orders, %d frozen, %d eligible containers",
    len(pending), frozen_count, len(eligible),
  )

  allocations: List[AllocationRow] = []
  skipped: List[SkippedRow] = []
  allocated_qty = 0

  for order in pending:
    verdict = classify_order(order, ctx.exclusions, ctx.id_to_key)
    if not verdict["allocatable"]:
      logger.debug("Order %s skipped: no capacity-relevant items (%s)", order["external_number"], verdict["detail"])
      skipped.append(_skipped(order, "no_items", verdict["detail"], {}))
      continue
    row, skip = place_order(order, verdict["requirements"], eligible, snapshot, ledger, ctx)
    if row is not None:
      allocations.append(row)
      allocated_qty += sum(verdict["requirements"].values())
    elif skip is not None:
      logger.debug("Order %s skipped: %s", order["external_number"], skip["reason"])
      skipped.append(skip)

  reasons: Dict[str, int] = {r: 0 for r in SKIP_REASONS}
  for s in skipped:
    reasons[s["reason"]] = reasons.get(s["reason"], 0) + 1

  logger.info("Batch allocation finished: %d allocated, %d skipped %s", len(allocations), len(skipped), reasons)

  return {
    "summary": {
      "orders_considered": len(pending),
      "frozen_orders_count": frozen_count,
      "eligible_containers_count": len(eligible),
      "allocated_count": len(allocations),
      "skipped_count": len(skipped),
      "skipped_reasons": reasons,
      "total_allocated_quantity": allocated_qty,
    },
    "allocations": allocations,
    "skipped": skipped,
    "inventory_status": snapshot.status_rows(sort_containers_by_eta(containers)),
  }


def allocate_single(ledger: Ledger, order_id: str, settings: Optional[AllocationSettings] = None) -> SingleAllocationResult:
  """Place one newly arrived order using the batch rule.

  The snapshot is reconstructed from scratch: total capacity minus the
  requirements of every order linked to each container, excluding only the
  order being placed. An order that is already linked is left untouched and
  reported as ``already_allocated``.

  Raises:
    OrderNotFoundError: If ``order_id`` is unknown.
  """
  order = ledger.get_order(order_id)
  base: SingleAllocationResult = {
    "order_id": order["id"],
    "external_number": order["external_number"],
    "allocated": False,
    "container_id": order.get("container_id"),
    "container_code": None,
    "delivery_eta": order.get("delivery_eta"),
    "reason": None,
    "detail": "",
  }
  if order.get("container_id") is not None:
    base["reason"] = "already_allocated"
    base["detail"] = "order is already linked to a container"
    return base

  containers = ledger.containers()
  capacity = ledger.capacity_entries()
  ctx = AllocationContext.from_settings(settings, capacity)

  verdict = classify_order(order, ctx.exclusions, ctx.id_to_key)
  if not verdict["allocatable"]:
    logger.info("Order %s not allocatable: no capacity-relevant items (%s)", order["external_number"], verdict["detail"])
    base["reason"] = "no_items"
    base["detail"] = verdict["detail"]
    return base

  snapshot = InventorySnapshot.build(
    containers, capacity, ledger.orders(), ctx.exclusions, ctx.id_to_key, exclude_order_ids=(order["id"],)
  )
  row, skip = place_order(order, verdict["requirements"], eligible_containers(containers), snapshot, ledger, ctx)
  if row is None and skip is None:
    current = ledger.get_order(order["id"])
    base.update({"container_id": current.get("container_id"), "delivery_eta": current.get("delivery_eta")})
    base["reason"] = "already_allocated"
    base["detail"] = "order was linked by a concurrent allocation"
    return base
  if row is None:
    assert skip is not None
    logger.info("Order %s left unallocated: %s", order["external_number"], skip["reason"])
    base["reason"] = skip["reason"]
    base["detail"] = skip["detail"]
    return base

  logger.info("Order %s allocated to container %s", order["external_number"], row["container_code"])
  base.update({
    "allocated": True,
    "container_id": row["container_id"],
    "container_code": row["container_code"],
    "delivery_eta": row["delivery_eta"],
  })
  return base
