"""
Unit tests for allocate_batch / allocate_single in fifo_allocation.py.

Covers:
- Strict creation-order priority (no reordering for a better fit).
- Earliest-ETA container preference, containers without ETA last.
- All-or-nothing placement of multi-product orders.
- Delivered containers never receive new orders.
- Frozen (already linked) orders.
- Skip reasons and the summary histogram.
- Idempotence, determinism and batch/incremental equivalence.
"""
from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from domain_types import CapacityEntry, Container, LineItem, Order
from allocation_errors import LedgerWriteError, OrderNotFoundError
from fifo_allocation import allocate_batch, allocate_single, sort_containers_by_eta, sort_orders_fifo
from ledger import MemoryLedger

BASE = datetime(2025, 11, 1, 8, 0)


def _container(cid: str, eta: Optional[date], status: str = "in_transit") -> Container:
    return {"id": cid, "code": cid.upper(), "eta": eta, "status": status}  # type: ignore[typeddict-item]


def _capacity(cid: str, products: Dict[str, int]) -> List[CapacityEntry]:
    return [{"container_id": cid, "product_key": k, "total_quantity": q} for k, q in products.items()]


def _order(oid: str, minutes: int, products: Dict[str, int], container_id: Optional[str] = None) -> Order:
    items: List[LineItem] = [
        {"id": f"{oid}-{i}", "order_id": oid, "product_key": k, "quantity": q}
        for i, (k, q) in enumerate(products.items())
    ]
    return {
        "id": oid,
        "external_number": oid.upper(),
        "created_at": BASE + timedelta(minutes=minutes),
        "container_id": container_id,
        "delivery_eta": None,
        "line_items": items,
    }


def _links(ledger: MemoryLedger) -> Dict[str, Optional[str]]:
    return {o["id"]: o["container_id"] for o in ledger.orders()}


def _remaining(result, cid: str, key: str) -> int:
    for row in result["inventory_status"]:
        if row["container_id"] == cid:
            for p in row["products"]:
                if p["product_key"] == key:
                    return p["remaining"]
    raise KeyError((cid, key))


class TestSorting(unittest.TestCase):
    def test_orders_sorted_by_created_at_ties_keep_arrival(self) -> None:
        orders = [_order("b", 5, {"x": 1}), _order("a", 5, {"x": 1}), _order("c", 1, {"x": 1})]
        self.assertEqual([o["id"] for o in sort_orders_fifo(orders)], ["c", "b", "a"])

    def test_containers_sorted_by_eta_none_last(self) -> None:
        cs = [_container("n", None), _container("late", date(2026, 2, 1)), _container("early", date(2026, 1, 1))]
        self.assertEqual([c["id"] for c in sort_containers_by_eta(cs)], ["early", "late", "n"])


class TestAllocateBatch(unittest.TestCase):
    def test_scenario_earliest_container_then_next(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10)), _container("c2", date(2026, 1, 20))],
            _capacity("c1", {"sofa": 5}) + _capacity("c2", {"sofa": 10}),
            [_order("o1", 0, {"sofa": 3}), _order("o2", 1, {"sofa": 3}), _order("o3", 2, {"sofa": 4})],
        )
        res = allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"o1": "c1", "o2": "c2", "o3": "c2"})
        self.assertEqual(_remaining(res, "c1", "sofa"), 2)
        self.assertEqual(_remaining(res, "c2", "sofa"), 3)
        self.assertEqual(res["summary"]["allocated_count"], 3)
        self.assertEqual(res["summary"]["total_allocated_quantity"], 10)
        self.assertEqual(ledger.get_order("o1")["delivery_eta"], date(2026, 1, 10))

    def test_fifo_priority_without_reordering(self) -> None:
        # o1 cannot fit; o2 must not jump ahead to take capacity o1 would need later
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10))],
            _capacity("c1", {"chair": 2}),
            [_order("o1", 0, {"chair": 2}), _order("o2", 1, {"chair": 1})],
        )
        res = allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"o1": "c1", "o2": None})
        self.assertEqual(res["skipped"][0]["order_id"], "o2")
        self.assertEqual(res["skipped"][0]["reason"], "insufficient_stock")
        self.assertEqual(res["skipped"][0]["products_needed"], {"chair": 1})

    def test_older_order_placed_first_even_if_listed_later(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10))],
            _capacity("c1", {"chair": 2}),
            [_order("new", 10, {"chair": 2}), _order("old", 0, {"chair": 2})],
        )
        allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"new": None, "old": "c1"})

    def test_all_or_nothing(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10)), _container("c2", date(2026, 1, 20))],
            _capacity("c1", {"sofa": 5}) + _capacity("c2", {"sofa": 5, "table": 1}),
            [_order("o1", 0, {"sofa": 1, "table": 1})],
        )
        res = allocate_batch(ledger)
        # c1 has sofas but no table; the whole order goes to c2
        self.assertEqual(_links(ledger), {"o1": "c2"})
        self.assertEqual(_remaining(res, "c1", "sofa"), 5)

    def test_no_split_across_containers(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10)), _container("c2", date(2026, 1, 20))],
            _capacity("c1", {"sofa": 1}) + _capacity("c2", {"table": 1}),
            [_order("o1", 0, {"sofa": 1, "table": 1})],
        )
        res = allocate_batch(ledger)
        self.assertIsNone(ledger.get_order("o1")["container_id"])
        self.assertEqual(res["summary"]["skipped_reasons"]["insufficient_stock"], 1)

    def test_container_without_eta_used_last(self) -> None:
        ledger = MemoryLedger(
            [_container("nodate", None), _container("dated", date(2026, 5, 1))],
            _capacity("nodate", {"lamp": 5}) + _capacity("dated", {"lamp": 1}),
            [_order("o1", 0, {"lamp": 1}), _order("o2", 1, {"lamp": 1})],
        )
        allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"o1": "dated", "o2": "nodate"})
        self.assertIsNone(ledger.get_order("o2")["delivery_eta"])

    def test_delivered_containers_not_eligible(self) -> None:
        ledger = MemoryLedger(
            [_container("gone", date(2025, 1, 1), status="delivered"), _container("open", date(2026, 1, 1))],
            _capacity("gone", {"sofa": 10}) + _capacity("open", {"sofa": 1}),
            [_order("o1", 0, {"sofa": 1}), _order("o2", 1, {"sofa": 1})],
        )
        res = allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"o1": "open", "o2": None})
        self.assertEqual(res["summary"]["eligible_containers_count"], 1)

    def test_container_unavailable_when_nothing_eligible(self) -> None:
        ledger = MemoryLedger(
            [_container("gone", date(2025, 1, 1), status="delivered")],
            _capacity("gone", {"sofa": 10}),
            [_order("o1", 0, {"sofa": 1})],
        )
        res = allocate_batch(ledger)
        self.assertEqual(res["skipped"][0]["reason"], "container_unavailable")

    def test_no_items_orders_never_modeled(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 1))],
            _capacity("c1", {"sofa": 1}),
            [_order("o1", 0, {"Draaifunctie": 1}), _order("o2", 1, {})],
        )
        res = allocate_batch(ledger)
        details = {s["order_id"]: (s["reason"], s["detail"]) for s in res["skipped"]}
        self.assertEqual(details["o1"], ("no_items", "only_excluded_items"))
        self.assertEqual(details["o2"], ("no_items", "no_line_items"))
        self.assertEqual(res["summary"]["skipped_reasons"]["no_items"], 2)

    def test_linked_orders_are_frozen_and_consume_capacity(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 1)), _container("c2", date(2026, 2, 1))],
            _capacity("c1", {"sofa": 2}) + _capacity("c2", {"sofa": 2}),
            [_order("late", 5, {"sofa": 2}, container_id="c1"), _order("early", 0, {"sofa": 2})],
        )
        res = allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"late": "c1", "early": "c2"})
        self.assertEqual(res["summary"]["frozen_orders_count"], 1)
        self.assertEqual(res["summary"]["orders_considered"], 1)

    def test_summary_lists_every_reason(self) -> None:
        res = allocate_batch(MemoryLedger())
        self.assertEqual(
            set(res["summary"]["skipped_reasons"]),
            {"no_items", "insufficient_stock", "container_unavailable", "write_failed", "lock_timeout"},
        )

    def test_second_run_is_a_no_op(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 1))],
            _capacity("c1", {"chair": 3}),
            [_order("o1", 0, {"chair": 2}), _order("o2", 1, {"chair": 2}), _order("o3", 2, {"chair": 1})],
        )
        allocate_batch(ledger)
        before = _links(ledger)
        res = allocate_batch(ledger)
        self.assertEqual(_links(ledger), before)
        self.assertEqual(res["summary"]["allocated_count"], 0)
        self.assertEqual(before, {"o1": "c1", "o2": None, "o3": "c1"})

    def test_deterministic(self) -> None:
        def build() -> MemoryLedger:
            return MemoryLedger(
                [_container("c1", date(2026, 1, 1)), _container("c2", date(2026, 1, 1)), _container("c3", None)],
                _capacity("c1", {"a": 2, "b": 1}) + _capacity("c2", {"a": 3}) + _capacity("c3", {"b": 5, "a": 1}),
                [_order(f"o{i}", i % 3, {"a": 1 + i % 2, "b": i % 2}) for i in range(8)],
            )
        first, second = build(), build()
        allocate_batch(first)
        allocate_batch(second)
        self.assertEqual(_links(first), _links(second))

    def test_write_failure_skips_only_that_order(self) -> None:
        class FlakyLedger(MemoryLedger):
            def set_order_link(self, order_id, container_id, delivery_eta):
                if order_id == "o1":
                    raise LedgerWriteError("disk full", order_id=order_id)
                super().set_order_link(order_id, container_id, delivery_eta)

        ledger = FlakyLedger(
            [_container("c1", date(2026, 1, 1))],
            _capacity("c1", {"chair": 2}),
            [_order("o1", 0, {"chair": 1}), _order("o2", 1, {"chair": 2})],
        )
        res = allocate_batch(ledger)
        self.assertEqual(_links(ledger), {"o1": None, "o2": "c1"})
        self.assertEqual(res["skipped"][0]["reason"], "write_failed")


class TestAllocateSingle(unittest.TestCase):
    def test_places_new_order(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10)), _container("c2", date(2026, 1, 20))],
            _capacity("c1", {"sofa": 5}) + _capacity("c2", {"sofa": 10}),
            [_order("o1", 0, {"sofa": 3}, container_id="c1"), _order("o2", 1, {"sofa": 3})],
        )
        res = allocate_single(ledger, "o2")
        self.assertTrue(res["allocated"])
        self.assertEqual(res["container_id"], "c2")
        self.assertEqual(res["delivery_eta"], date(2026, 1, 20))
        self.assertIsNone(res["reason"])

    def test_already_allocated_untouched(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10))],
            _capacity("c1", {"sofa": 5}),
            [_order("o1", 0, {"sofa": 3}, container_id="c1")],
        )
        res = allocate_single(ledger, "o1")
        self.assertFalse(res["allocated"])
        self.assertEqual(res["reason"], "already_allocated")
        self.assertEqual(ledger.get_order("o1")["container_id"], "c1")

    def test_insufficient_stock(self) -> None:
        ledger = MemoryLedger(
            [_container("c1", date(2026, 1, 10))],
            _capacity("c1", {"sofa": 1}),
            [_order("o1", 0, {"sofa": 3})],
        )
        res = allocate_single(ledger, "o1")
        self.assertEqual(res["reason"], "insufficient_stock")
        self.assertIsNone(ledger.get_order("o1")["container_id"])

    def test_no_items(self) -> None:
        ledger = MemoryLedger([_container("c1", None)], _capacity("c1", {"sofa": 1}), [_order("o1", 0, {"turn function": 1})])
        res = allocate_single(ledger, "o1")
        self.assertEqual((res["reason"], res["detail"]), ("no_items", "only_excluded_items"))

    def test_unknown_order(self) -> None:
        with self.assertRaises(OrderNotFoundError):
            allocate_single(MemoryLedger(), "missing")

    def test_incremental_replay_matches_batch(self) -> None:
        containers = [_container("c1", date(2026, 1, 1)), _container("c2", date(2026, 3, 1)), _container("c3", None)]
        capacity = (
            _capacity("c1", {"sofa": 3, "chair": 4})
            + _capacity("c2", {"sofa": 2, "table": 2})
            + _capacity("c3", {"chair": 2, "table": 1})
        )
        orders = [
            _order("o1", 0, {"sofa": 2}),
            _order("o2", 1, {"sofa": 2, "table": 1}),
            _order("o3", 2, {"chair": 3}),
            _order("o4", 3, {"sofa": 1, "chair": 1}),
            _order("o5", 4, {"table": 2}),
            _order("o6", 5, {"chair": 2}),
            _order("o7", 6, {"sofa": 1}),
        ]
        batch = MemoryLedger(containers, capacity, orders)
        allocate_batch(batch)

        incremental = MemoryLedger(containers, capacity, orders)
        for order in sort_orders_fifo(orders):
            allocate_single(incremental, order["id"])
        self.assertEqual(_links(batch), _links(incremental))


if __name__ == "__main__":
    unittest.main()
