"""
Tests for the AllocationService facade, the CLI entry point and the
Markdown reports.
"""
from __future__ import annotations

import contextlib
import io
import json
import logging
import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from allocation_errors import OrderNotFoundError
from allocation_service import AllocationService
from ledger import MemoryLedger
from log_setup import configure_logging
from main import main
from utilities import batch_markdown, validation_markdown


def _ledger() -> MemoryLedger:
    return MemoryLedger(
        [
            {"id": "c1", "code": "CONT-1", "eta": date(2026, 1, 10), "status": "in_transit"},
            {"id": "c2", "code": "CONT-2", "eta": date(2026, 1, 20), "status": "pending"},
        ],
        [
            {"container_id": "c1", "product_key": "Sofa", "total_quantity": 5},
            {"container_id": "c2", "product_key": "Sofa", "total_quantity": 10},
        ],
        [
            {
                "id": f"o{i}",
                "external_number": f"#100{i}",
                "created_at": datetime(2025, 11, 1, 8, i),
                "container_id": None,
                "delivery_eta": None,
                "line_items": [{"id": f"o{i}-1", "order_id": f"o{i}", "product_key": "sofa", "quantity": q}],
            }
            for i, q in enumerate((3, 3, 4))
        ],
    )


class TestAllocationService(unittest.TestCase):
    def test_batch_and_lookup(self) -> None:
        service = AllocationService(_ledger())
        res = service.run_batch_allocation()
        self.assertEqual(res["summary"]["allocated_count"], 3)
        lookup = service.lookup_delivery_eta("#1001")
        self.assertEqual(lookup["container_code"], "CONT-2")
        self.assertEqual(lookup["delivery_eta"], date(2026, 1, 20))
        with self.assertRaises(OrderNotFoundError):
            service.lookup_delivery_eta("#9999")

    def test_lookup_of_unallocated_order(self) -> None:
        lookup = AllocationService(_ledger()).lookup_delivery_eta("#1000")
        self.assertIsNone(lookup["container_code"])
        self.assertIsNone(lookup["delivery_eta"])

    def test_refresh_delivery_etas(self) -> None:
        ledger = _ledger()
        service = AllocationService(ledger)
        service.run_batch_allocation()
        # an external collaborator moves the container ETA
        ledger._containers["c2"]["eta"] = date(2026, 2, 1)
        self.assertEqual(service.refresh_delivery_etas("c2"), 2)
        self.assertEqual(ledger.get_order("o2")["delivery_eta"], date(2026, 2, 1))
        self.assertEqual(service.refresh_delivery_etas("c2"), 0)

    def test_settings_are_merged_with_defaults(self) -> None:
        service = AllocationService(_ledger(), {"max_issues_reported": 3})
        self.assertEqual(service.settings["max_issues_reported"], 3)
        self.assertEqual(service.settings["max_orders_per_issue"], 10)

    def test_reports_render(self) -> None:
        service = AllocationService(_ledger())
        text = batch_markdown(service.run_batch_allocation())
        self.assertIn("Allocated 3 of 3", text)
        self.assertIn("| #1000 | CONT-1 | 2026-01-10 |", text)
        self.assertIn("All containers are properly allocated", validation_markdown(service.validate_allocation()))


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.base = Path(tmpdir.name)
        (self.base / "containers.json").write_text(json.dumps([
            {"id": "c1", "code": "CONT-1", "eta": "2026-01-10", "status": "in_transit"},
        ]), encoding="utf-8")
        (self.base / "capacity.json").write_text(json.dumps([
            {"container_id": "c1", "product_key": "Chair", "total_quantity": 2},
        ]), encoding="utf-8")
        (self.base / "orders.json").write_text(json.dumps([
            {"id": "o1", "external_number": "#1", "created_at": "2025-11-01T08:00:00",
             "line_items": [{"id": "i1", "product_key": "chair", "quantity": 2}]},
            {"id": "o2", "external_number": "#2", "created_at": "2025-11-01T09:00:00",
             "container_id": "c1", "line_items": [{"id": "i2", "product_key": "chair", "quantity": 1}]},
        ]), encoding="utf-8")
        self.addCleanup(self._reset_logging)

    def _reset_logging(self) -> None:
        configure_logging("WARNING")

    def _run(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = main(["--data-dir", str(self.base), "--log-level", "WARNING", *argv])
        return code, out.getvalue()

    def test_allocate_without_write_leaves_files(self) -> None:
        code, out = self._run("allocate")
        self.assertEqual(code, 0)
        self.assertIn("insufficient_stock", out)
        raw = json.loads((self.base / "orders.json").read_text(encoding="utf-8"))
        self.assertIsNone(raw[0].get("container_id"))

    def test_validate_flags_over_allocation(self) -> None:
        orders = json.loads((self.base / "orders.json").read_text(encoding="utf-8"))
        orders[0]["container_id"] = "c1"
        (self.base / "orders.json").write_text(json.dumps(orders), encoding="utf-8")
        code, out = self._run("validate")
        self.assertEqual(code, 2)
        self.assertIn("Found 1 over-allocation issue(s)", out)
        code, out = self._run("suggest", "c1")
        self.assertEqual(code, 0)
        self.assertIn("Unlink: #2", out)

    def test_remove_order_with_write(self) -> None:
        code, _ = self._run("--write", "remove-order", "o2")
        self.assertEqual(code, 0)
        code, out = self._run("--write", "allocate-order", "o1")
        self.assertEqual(code, 0)
        self.assertIn("#1 -> CONT-1", out)
        raw = json.loads((self.base / "orders.json").read_text(encoding="utf-8"))
        self.assertEqual([o["id"] for o in raw], ["o1"])
        self.assertEqual(raw[0]["container_id"], "c1")

    def test_unknown_order_exit_code(self) -> None:
        code, _ = self._run("remove-order", "nope")
        self.assertEqual(code, 1)


class TestLogging(unittest.TestCase):
    def test_repeated_configuration_does_not_stack_handlers(self) -> None:
        configure_logging("INFO")
        root = configure_logging("DEBUG")
        ours = [h for h in root.handlers if getattr(h, "_allocation_handler", False)]
        self.assertEqual(len(ours), 1)
        self.assertEqual(root.level, logging.DEBUG)
        configure_logging("WARNING")

    def test_unknown_level(self) -> None:
        with self.assertRaises(ValueError):
            configure_logging("LOUD")


if __name__ == "__main__":
    unittest.main()
