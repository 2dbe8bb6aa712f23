"""Trigger surface of the allocation core.

``AllocationService`` binds a ledger and settings and exposes the operations
external collaborators invoke (HTTP routes, webhooks, CLI). Transport and
authentication are the caller's business.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from allocation_types import (
    AllocationSettings,
    BatchResult,
    CascadeResult,
    DeliveryLookup,
    DisplacementPlan,
    SingleAllocationResult,
    ValidationReport,
    resolve_settings,
)
from allocation_audit import validate_allocation
from displacement import suggest_displacement
from fifo_allocation import allocate_batch, allocate_single
from ledger import Ledger
from reallocation import apply_refund, remove_order_and_cascade, unlink_order

logger = logging.getLogger(__name__)

__all__ = ["AllocationService"]


class AllocationService:
    """Facade over the allocators, the reallocation coordinator and the audit.

    Validation is never triggered implicitly: out-of-band edits are audited
    when an operator calls ``validate_allocation``.
    """

    def __init__(self, ledger: Ledger, settings: Optional[AllocationSettings] = None) -> None:
        self.ledger = ledger
        self.settings = resolve_settings(settings)

    def run_batch_allocation(self) -> BatchResult:
        return allocate_batch(self.ledger, self.settings)

    def allocate_single_order(self, order_id: str) -> SingleAllocationResult:
        """Place one order; returns only once the link is written or definitively refused."""
        return allocate_single(self.ledger, order_id, self.settings)

    def remove_order_and_cascade(self, order_id: str) -> CascadeResult:
        return remove_order_and_cascade(self.ledger, order_id, self.settings)

    def apply_refund(self, order_id: str, refunded_line_item_ids: Iterable[str] = (), full: bool = False) -> CascadeResult:
        return apply_refund(self.ledger, order_id, refunded_line_item_ids, full=full, settings=self.settings)

    def unlink_order(self, order_id: str) -> SingleAllocationResult:
        return unlink_order(self.ledger, order_id, self.settings)

    def validate_allocation(self) -> ValidationReport:
        return validate_allocation(self.ledger, self.settings)

    def suggest_displacement(self, container_id: str) -> DisplacementPlan:
        return suggest_displacement(self.ledger, container_id, self.settings)

    def refresh_delivery_etas(self, container_id: str) -> int:
        """Copy the container's current ETA onto every order linked to it.

        Run after an external ETA edit. Returns the number of orders updated.
        """
        container = self.ledger.get_container(container_id)
        updated = 0
        with self.ledger.container_lock(container_id, float(self.settings["lock_timeout_seconds"])):
            for order in self.ledger.linked_orders(container_id):
                if order.get("delivery_eta") == container.get("eta"):
                    continue
                self.ledger.set_order_link(order["id"], container_id, container.get("eta"))
                updated += 1
        logger.info("Delivery ETA of %d order(s) in %s set to %s", updated, container["code"], container.get("eta"))
        return updated

    def lookup_delivery_eta(self, external_number: str) -> DeliveryLookup:
        """Tracking lookup: where an order ships and when.

        Raises:
            OrderNotFoundError: If no order carries ``external_number``.
        """
        order = self.ledger.find_order_by_number(external_number)
        container = None
        if order.get("container_id") is not None:
            container = self.ledger.get_container(order["container_id"])  # type: ignore[arg-type]
        return {
            "external_number": order["external_number"],
            "order_id": order["id"],
            "container_code": container["code"] if container else None,
            "container_status": container["status"] if container else None,
            "delivery_eta": order.get("delivery_eta"),
        }
