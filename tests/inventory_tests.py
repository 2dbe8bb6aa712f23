"""
Unit tests for the per-run inventory snapshot in inventory.py.
"""
from __future__ import annotations

import unittest
from datetime import date, datetime
from typing import List

from domain_types import CapacityEntry, Container, Order
from inventory import InventorySnapshot, container_remaining, declared_totals
from requirements import normalize_exclusions

EXCLUSIONS = normalize_exclusions(["draaifunctie"])


def _containers() -> List[Container]:
    return [
        {"id": "c1", "code": "CONT-1", "eta": date(2025, 3, 1), "status": "in_transit"},
        {"id": "c2", "code": "CONT-2", "eta": None, "status": "pending"},
    ]


def _capacity() -> List[CapacityEntry]:
    return [
        {"container_id": "c1", "product_key": "Chair", "total_quantity": 10},
        {"container_id": "c1", "product_key": " chair", "total_quantity": 2},
        {"container_id": "c1", "product_key": "Table", "total_quantity": 3},
        {"container_id": "c2", "product_key": "Chair", "total_quantity": 4},
    ]


def _linked(oid: str, cid: str, name: str, qty: int) -> Order:
    return {
        "id": oid,
        "external_number": f"#{oid}",
        "created_at": datetime(2025, 1, 1),
        "container_id": cid,
        "delivery_eta": None,
        "line_items": [{"id": f"{oid}-1", "order_id": oid, "product_key": name, "quantity": qty}],
    }


class TestDeclaredTotals(unittest.TestCase):
    def test_duplicate_keys_are_summed(self) -> None:
        totals = declared_totals(_capacity())
        self.assertEqual(totals["c1"], {"chair": 12, "table": 3})
        self.assertEqual(totals["c2"], {"chair": 4})


class TestSnapshot(unittest.TestCase):
    def test_linked_orders_consume_capacity(self) -> None:
        orders = [_linked("o1", "c1", "Chair", 5), _linked("o2", "c1", "Table", 3)]
        snap = InventorySnapshot.build(_containers(), _capacity(), orders, EXCLUSIONS)
        self.assertEqual(snap.remaining("c1", "chair"), 7)
        self.assertEqual(snap.remaining("c1", "table"), 0)
        self.assertEqual(snap.total("c1", "table"), 3)
        self.assertEqual(snap.remaining("c2", "chair"), 4)

    def test_excluded_order_ignored(self) -> None:
        orders = [_linked("o1", "c1", "Chair", 5)]
        snap = InventorySnapshot.build(_containers(), _capacity(), orders, EXCLUSIONS, exclude_order_ids=["o1"])
        self.assertEqual(snap.remaining("c1", "chair"), 12)

    def test_fits_requires_positive_remaining_for_every_product(self) -> None:
        snap = InventorySnapshot.build(_containers(), _capacity(), [_linked("o1", "c1", "Table", 3)], EXCLUSIONS)
        self.assertTrue(snap.fits("c1", {"chair": 12}))
        self.assertFalse(snap.fits("c1", {"chair": 13}))
        self.assertFalse(snap.fits("c1", {"chair": 1, "table": 1}))
        self.assertFalse(snap.fits("c1", {"sofa": 1}))
        self.assertFalse(snap.fits("c1", {}))
        self.assertFalse(snap.fits("unknown", {"chair": 1}))

    def test_deduct_only_touches_snapshot(self) -> None:
        snap = InventorySnapshot.build(_containers(), _capacity(), [], EXCLUSIONS)
        snap.deduct("c2", {"chair": 3})
        self.assertEqual(snap.remaining("c2", "chair"), 1)
        self.assertEqual(snap.total("c2", "chair"), 4)

    def test_undeclared_product_goes_negative(self) -> None:
        snap = InventorySnapshot.build(_containers(), _capacity(), [_linked("o1", "c2", "Sofa", 2)], EXCLUSIONS)
        self.assertEqual(snap.remaining("c2", "sofa"), -2)
        rows = snap.products_remaining("c2")
        self.assertIn({"product_key": "sofa", "total_quantity": 0, "remaining": -2}, rows)

    def test_status_rows_follow_given_container_order(self) -> None:
        snap = InventorySnapshot.build(_containers(), _capacity(), [], EXCLUSIONS)
        rows = snap.status_rows(list(reversed(_containers())))
        self.assertEqual([r["container_code"] for r in rows], ["CONT-2", "CONT-1"])


class TestContainerRemaining(unittest.TestCase):
    def test_single_container_view(self) -> None:
        orders = [_linked("o1", "c1", "Chair", 5), _linked("o2", "c2", "Chair", 4), _linked("o3", "c1", "Chair", 1)]
        totals, remaining = container_remaining("c1", _capacity(), orders, EXCLUSIONS, exclude_order_ids=["o3"])
        self.assertEqual(totals, {"chair": 12, "table": 3})
        self.assertEqual(remaining, {"chair": 7, "table": 3})


if __name__ == "__main__":
    unittest.main()
