"""
Loading and saving ledger snapshots as JSON files.

A snapshot directory holds ``containers.json``, ``capacity.json`` and
``orders.json`` (each a JSON list) and optionally ``settings.json``. Loaders
validate structure (see ``input_validations``), convert ISO dates and return
domain-typed structures defined in ``domain_types``.
"""
import json
import os
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from domain_types import CapacityEntry, Container, LineItem, Order
from allocation_types import AllocationSettings
from input_validations import validate_ledger_data, validate_settings_payload
from ledger import MemoryLedger

CONTAINERS_FILE = "containers.json"
CAPACITY_FILE = "capacity.json"
ORDERS_FILE = "orders.json"
SETTINGS_FILE = "settings.json"


def _read_json(path: Path) -> Any:
    if not path.is_file():
        raise FileNotFoundError(f"Snapshot file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {path}") from exc


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return datetime.strptime(str(value), "%Y-%m-%d").date()


def _parse_datetime(value: Any) -> datetime:
    """Parse an ISO timestamp into a naive UTC datetime.

    Offsets are converted to UTC and dropped; timestamps without an offset are
    taken as UTC already, so every ``created_at`` compares with every other.
    """
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_containers(raw: List[Dict[str, Any]]) -> List[Container]:
    return [
        cast(Container, {"id": str(c["id"]), "code": str(c["code"]), "eta": _parse_date(c.get("eta")), "status": c["status"]})
        for c in raw
    ]


def to_capacity_entries(raw: List[Dict[str, Any]]) -> List[CapacityEntry]:
    out: List[CapacityEntry] = []
    for e in raw:
        entry: CapacityEntry = {
            "container_id": str(e["container_id"]),
            "product_key": e["product_key"],
            "total_quantity": int(e["total_quantity"]),
        }
        if e.get("product_id") is not None:
            entry["product_id"] = str(e["product_id"])
        out.append(entry)
    return out


def to_orders(raw: List[Dict[str, Any]]) -> List[Order]:
    out: List[Order] = []
    for o in raw:
        oid = str(o["id"])
        items: List[LineItem] = []
        for it in o.get("line_items", []):
            item: LineItem = {"id": str(it["id"]), "order_id": oid, "product_key": it.get("product_key")}
            if it.get("quantity") is not None:
                item["quantity"] = int(it["quantity"])
            if it.get("product_id") is not None:
                item["product_id"] = str(it["product_id"])
            items.append(item)
        out.append({
            "id": oid,
            "external_number": str(o["external_number"]),
            "created_at": _parse_datetime(o["created_at"]),
            "container_id": str(o["container_id"]) if o.get("container_id") is not None else None,
            "delivery_eta": _parse_date(o.get("delivery_eta")),
            "line_items": items,
        })
    return out


def load_snapshot(directory: str) -> Tuple[List[Container], List[CapacityEntry], List[Order]]:
    """Load and validate a snapshot directory.

    Args:
        directory: Directory containing containers.json, capacity.json, orders.json.

    Returns:
        (containers, capacity_entries, orders) as domain-typed lists.

    Raises:
        FileNotFoundError: If a snapshot file is missing.
        ValueError: If JSON structure or values are invalid.
    """
    base = Path(directory)
    containers = _read_json(base / CONTAINERS_FILE)
    capacity = _read_json(base / CAPACITY_FILE)
    orders = _read_json(base / ORDERS_FILE)
    validate_ledger_data(containers, capacity, orders)
    return to_containers(containers), to_capacity_entries(capacity), to_orders(orders)


def load_ledger(directory: str) -> MemoryLedger:
    containers, capacity, orders = load_snapshot(directory)
    return MemoryLedger(containers, capacity, orders)


def load_settings(path: str) -> AllocationSettings:
    """Load allocation settings from a JSON file.

    Example JSON:
    {
      "excluded_product_terms": ["draaifunctie", "turn function"],
      "max_issues_reported": 50
    }

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If keys or values are invalid.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Settings file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data: Dict[str, Any] = json.load(f)
        except Exception as e:
            raise ValueError(f"Failed to parse settings JSON: {e}")
    return cast(AllocationSettings, validate_settings_payload(data))


def orders_to_json(orders: List[Order]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for o in orders:
        out.append({
            "id": o["id"],
            "external_number": o["external_number"],
            "created_at": o["created_at"].isoformat(),
            "container_id": o.get("container_id"),
            "delivery_eta": o["delivery_eta"].isoformat() if o.get("delivery_eta") else None,
            "line_items": [
                {k: v for k, v in it.items() if k != "order_id"}
                for it in o.get("line_items", [])
            ],
        })
    return out


def save_orders(directory: str, orders: List[Order]) -> Path:
    """Write orders back to ``orders.json`` (atomic replace)."""
    path = Path(directory) / ORDERS_FILE
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(orders_to_json(orders), indent=2), encoding="utf-8")
    os.replace(tmp, path)
    return path
