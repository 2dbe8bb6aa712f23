"""
Reallocation after an order leaves its container.

When an allocated order is deleted (manual delete, full refund, or a partial
refund that strips every capacity-relevant item) the capacity it held is
freed. Orders of the same container created *after* it are returned to the
unallocated pool and the FIFO placement rule is replayed for exactly that
set, oldest first, against a snapshot rebuilt after the removal. Earlier
orders and other containers' orders are untouched.

The set of orders to reconsider is an explicit worklist: it is fixed when the
removal happens and drained once, so the cascade always terminates and its
order of evaluation can be audited from the result.

Orders that fail to re-qualify stay unallocated and are returned under
``regressed``. That is an expected, visible outcome, not an error.
"""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque, Iterable, List, Optional

from domain_types import Order
from allocation_types import (
    AllocationRow,
    AllocationSettings,
    CascadeResult,
    ProductRemainingRow,
    SingleAllocationResult,
    SkippedRow,
)
from allocation_errors import ConcurrentModificationError, LedgerWriteError
from datatypes import AllocationContext
from fifo_allocation import eligible_containers, place_order, sort_orders_fifo
from inventory import InventorySnapshot, container_remaining
from ledger import Ledger
from requirements import classify_order

logger = logging.getLogger(__name__)

__all__ = ["remove_order_and_cascade", "apply_refund", "unlink_order", "replay_worklist"]

_MAX_LOCK_ATTEMPTS = 5


def _container_rows(ledger: Ledger, container_id: Optional[str], ctx: AllocationContext) -> List[ProductRemainingRow]:
    if container_id is None:
        return []
    totals, remaining = container_remaining(
        container_id, ledger.capacity_for(container_id), ledger.linked_orders(container_id),
        ctx.exclusions, ctx.id_to_key,
    )
    keys = sorted(set(totals) | set(remaining))
    return [{"product_key": k, "total_quantity": totals.get(k, 0), "remaining": remaining.get(k, 0)} for k in keys]


def _detach_later_orders(ledger: Ledger, container_id: str, created_at: datetime) -> List[Order]:
    """Unlink orders of ``container_id`` created after ``created_at``.

    Caller holds the container lock. Returns the detached orders in FIFO order.
    """
    later = sort_orders_fifo([o for o in ledger.linked_orders(container_id) if o["created_at"] > created_at])
    detached: List[Order] = []
    for order in later:
        try:
            ledger.set_order_link(order["id"], None, None)
        except LedgerWriteError as exc:
            # the order keeps its link and its capacity; nothing to replay for it
            logger.error("Could not unlink order %s from %s: %s", order["external_number"], container_id, exc)
            continue
        order["container_id"] = None
        order["delivery_eta"] = None
        detached.append(order)
    return detached


def replay_worklist(ledger: Ledger, worklist: Iterable[Order], ctx: AllocationContext) -> tuple[List[AllocationRow], List[SkippedRow]]:
    """Place every order of the worklist once, oldest first.

    The snapshot is rebuilt from the ledger after the removal and unlinking,
    and excludes nothing else.
    """
    queue: Deque[Order] = deque(sort_orders_fifo(list(worklist)))
    if not queue:
        return [], []

    containers = ledger.containers()
    snapshot = InventorySnapshot.build(
        containers, ledger.capacity_entries(), ledger.orders(), ctx.exclusions, ctx.id_to_key
    )
    eligible = eligible_containers(containers)

    reallocated: List[AllocationRow] = []
    regressed: List[SkippedRow] = []
    while queue:
        order = queue.popleft()
        verdict = classify_order(order, ctx.exclusions, ctx.id_to_key)
        if not verdict["allocatable"]:
            regressed.append({
                "order_id": order["id"],
                "external_number": order["external_number"],
                "reason": "no_items",
                "detail": verdict["detail"],
                "products_needed": {},
            })
            continue
        row, skip = place_order(order, verdict["requirements"], eligible, snapshot, ledger, ctx)
        if row is not None:
            reallocated.append(row)
        elif skip is not None:
            logger.warning("Order %s could not be reallocated (%s); it is unallocated now", order["external_number"], skip["reason"])
            regressed.append(skip)
    return reallocated, regressed


def _cascade(
    ledger: Ledger,
    ctx: AllocationContext,
    order: Order,
    action: str,
    remove,
) -> CascadeResult:
    """Run ``remove`` under the container lock, detach later orders, replay them.

    The order's container is read again once the lock is held; if a
    concurrent call moved the order meanwhile, the lock of its new container
    is taken instead.
    """
    container_id = order.get("container_id")
    for _attempt in range(_MAX_LOCK_ATTEMPTS):
        if container_id is None:
            remove()
            logger.info("Order %s removed (%s); it was not linked, nothing to reallocate", order["external_number"], action)
            return {
                "removed_order_id": order["id"],
                "action": action,  # type: ignore[typeddict-item]
                "container_id": None,
                "reconsidered": [],
                "reallocated": [],
                "regressed": [],
                "container_remaining": [],
            }

        with ledger.container_lock(container_id, ctx.lock_timeout):
            current = ledger.get_order(order["id"])
            if current.get("container_id") != container_id:
                logger.info(
                    "Order %s moved from %s to %s before the lock was taken; retrying",
                    order["external_number"], container_id, current.get("container_id"),
                )
                container_id = current.get("container_id")
                continue
            remove()
            detached = _detach_later_orders(ledger, container_id, current["created_at"])
        break
    else:
        raise ConcurrentModificationError(str(container_id), ctx.lock_timeout)

    logger.info(
        "Order %s removed from container %s (%s); reconsidering %d later order(s)",
        order["external_number"], container_id, action, len(detached),
    )
    reallocated, regressed = replay_worklist(ledger, detached, ctx)
    if regressed:
        logger.warning(
            "%d order(s) lost their container after removing %s: %s",
            len(regressed), order["external_number"], ", ".join(r["external_number"] for r in regressed),
        )
    return {
        "removed_order_id": order["id"],
        "action": action,  # type: ignore[typeddict-item]
        "container_id": container_id,
        "reconsidered": [o["id"] for o in detached],
        "reallocated": reallocated,
        "regressed": regressed,
        "container_remaining": _container_rows(ledger, container_id, ctx),
    }


def remove_order_and_cascade(ledger: Ledger, order_id: str, settings: Optional[AllocationSettings] = None) -> CascadeResult:
    """Delete an order and reallocate later orders of its former container.

    Raises:
        OrderNotFoundError: If ``order_id`` is unknown.
    """
    order = ledger.get_order(order_id)
    ctx = AllocationContext.from_settings(settings, ledger.capacity_entries())
    return _cascade(ledger, ctx, order, "deleted", lambda: ledger.delete_order(order_id))


def apply_refund(
    ledger: Ledger,
    order_id: str,
    refunded_line_item_ids: Iterable[str] = (),
    full: bool = False,
    settings: Optional[AllocationSettings] = None,
) -> CascadeResult:
    """Apply a full or partial refund to an order.

    * Full refund, or a refund naming no line items: the order is deleted and
      later orders of its container are reallocated.
    * Partial refund: only the refunded line items are removed.
        - At least one capacity-relevant item left: the order keeps its link;
          its requirement only shrank, so the capacity invariant still holds.
        - No line items left: the order is deleted (cascade).
        - Only non-capacity items left: the order is unlinked (cascade).
    """
    refunded = [str(i) for i in refunded_line_item_ids]
    if full or not refunded:
        if not full:
            logger.warning("Refund for order %s names no line items; treating it as a full refund", order_id)
        return remove_order_and_cascade(ledger, order_id, settings)

    order = ledger.get_order(order_id)
    ctx = AllocationContext.from_settings(settings, ledger.capacity_entries())
    refunded_set = set(refunded)
    survivors = [it for it in order["line_items"] if str(it["id"]) not in refunded_set]

    if not survivors:
        return _cascade(ledger, ctx, order, "deleted", lambda: ledger.delete_order(order_id))

    survivor_verdict = classify_order({**order, "line_items": survivors}, ctx.exclusions, ctx.id_to_key)
    if survivor_verdict["allocatable"] or order.get("container_id") is None:
        ledger.remove_line_items(order_id, refunded)
        logger.info("Partial refund on order %s: %d item(s) removed, link kept", order["external_number"], len(refunded))
        return {
            "removed_order_id": order["id"],
            "action": "items_removed",
            "container_id": order.get("container_id"),
            "reconsidered": [],
            "reallocated": [],
            "regressed": [],
            "container_remaining": _container_rows(ledger, order.get("container_id"), ctx),
        }

    def _strip_and_unlink() -> None:
        ledger.set_order_link(order_id, None, None)
        ledger.remove_line_items(order_id, refunded)

    return _cascade(ledger, ctx, order, "unlinked", _strip_and_unlink)


def unlink_order(ledger: Ledger, order_id: str, settings: Optional[AllocationSettings] = None) -> SingleAllocationResult:
    """Manually return an order to the unallocated pool (no cascade).

    The freed capacity is picked up by the next batch run.
    """
    order = ledger.get_order(order_id)
    result: SingleAllocationResult = {
        "order_id": order["id"],
        "external_number": order["external_number"],
        "allocated": False,
        "container_id": None,
        "container_code": None,
        "delivery_eta": None,
        "reason": None,
        "detail": "",
    }
    container_id = order.get("container_id")
    if container_id is None:
        result["reason"] = "not_allocated"
        result["detail"] = "order was not linked to a container"
        return result

    ctx = AllocationContext.from_settings(settings)
    with ledger.container_lock(container_id, ctx.lock_timeout):
        ledger.set_order_link(order_id, None, None)
    logger.info("Order %s manually unlinked from container %s", order["external_number"], container_id)
    result["detail"] = f"unlinked from {container_id}"
    return result
