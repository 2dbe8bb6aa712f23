"""Structural validation of ledger snapshot payloads and settings.

These checks run on the raw JSON structures before they are converted into
domain types and loaded into a ledger.

Functions
---------
validate_containers(containers)
    Ids unique, status known, eta either null or YYYY-MM-DD.
validate_capacity_entries(entries, container_ids)
    Known container, non-blank product name, non-negative integer totals.
validate_orders(orders)
    Ids unique, ISO created_at, line item list with integer quantities.
validate_ledger_data(containers, entries, orders)
    All of the above plus cross references.
validate_settings_payload(data)
    Settings keys and value ranges.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from domain_types import CONTAINER_STATUSES

__all__ = [
  "validate_containers",
  "validate_capacity_entries",
  "validate_orders",
  "validate_ledger_data",
  "validate_settings_payload",
]


def _is_int_like(value: Any) -> bool:
  if isinstance(value, bool):
    return False
  if isinstance(value, int):
    return True
  return isinstance(value, float) and value.is_integer()


def validate_containers(containers: List[Dict[str, Any]]) -> None:
  """Validate a list of raw container objects.

  Raises:
    ValueError: If the list or any container entry is invalid.
  """
  if not isinstance(containers, list):
    raise ValueError("Containers data must be a list.")

  seen: set[str] = set()
  for c in containers:
    if not isinstance(c, dict):
      raise ValueError(f"Container entry must be an object: {c!r}")
    if not all(k in c for k in ("id", "code", "status")):
      raise ValueError(f"Missing required container fields in: {c}")
    cid = str(c["id"])
    if cid in seen:
      raise ValueError(f"Duplicate container id: {cid}")
    seen.add(cid)
    if c["status"] not in CONTAINER_STATUSES:
      raise ValueError(f"Unknown container status {c['status']!r} (container {cid})")
    eta = c.get("eta")
    if eta is not None and not isinstance(eta, date):
      try:
        datetime.strptime(str(eta), "%Y-%m-%d")
      except ValueError:
        raise ValueError(f"eta must be null or in yyyy-MM-dd format (container {cid}, got {eta!r})")


def validate_capacity_entries(entries: List[Dict[str, Any]], container_ids: Optional[Iterable[str]] = None) -> None:
  """Validate raw capacity entries.

  Args:
    entries: Capacity entry objects.
    container_ids: Known container ids; when given, every entry must reference one.

  Raises:
    ValueError: If any entry is invalid.
  """
  if not isinstance(entries, list):
    raise ValueError("Capacity data must be a list.")
  known = set(container_ids) if container_ids is not None else None

  for e in entries:
    if not isinstance(e, dict):
      raise ValueError(f"Capacity entry must be an object: {e!r}")
    if not all(k in e for k in ("container_id", "product_key", "total_quantity")):
      raise ValueError(f"Missing required capacity fields in: {e}")
    if known is not None and str(e["container_id"]) not in known:
      raise ValueError(f"Capacity entry references unknown container {e['container_id']!r}")
    if not isinstance(e["product_key"], str) or e["product_key"].strip() == "":
      raise ValueError(f"Capacity product name must be a non-blank string in: {e}")
    qty = e["total_quantity"]
    if not _is_int_like(qty):
      raise ValueError(f"Capacity total_quantity must be an integer (got {qty!r}) in: {e}")
    if int(qty) < 0:
      raise ValueError(f"Capacity total_quantity must be >= 0 (got {qty}) in: {e}")


def validate_orders(orders: List[Dict[str, Any]]) -> None:
  """Validate raw orders and their line items.

  Line item names may be blank (such orders are reported as ``no_items``);
  quantities may be missing (counted as one unit) but must be integers when given.

  Raises:
    ValueError: If any order or item is structurally invalid.
  """
  if not isinstance(orders, list):
    raise ValueError("Orders data must be a list.")

  seen: set[str] = set()
  for o in orders:
    if not isinstance(o, dict):
      raise ValueError(f"Order entry must be an object: {o!r}")
    if not all(k in o for k in ("id", "external_number", "created_at")):
      raise ValueError(f"Missing required order fields in: {o}")
    oid = str(o["id"])
    if oid in seen:
      raise ValueError(f"Duplicate order id: {oid}")
    seen.add(oid)
    created = o["created_at"]
    if not isinstance(created, datetime):
      try:
        datetime.fromisoformat(str(created))
      except ValueError:
        raise ValueError(f"created_at must be an ISO datetime (order {oid}, got {created!r})")
    items = o.get("line_items", [])
    if not isinstance(items, list):
      raise ValueError(f"line_items must be a list in order {oid}")
    item_ids: set[str] = set()
    for it in items:
      if not isinstance(it, dict) or "id" not in it:
        raise ValueError(f"Line item without id in order {oid}: {it!r}")
      if str(it["id"]) in item_ids:
        raise ValueError(f"Duplicate line item id {it['id']!r} in order {oid}")
      item_ids.add(str(it["id"]))
      qty = it.get("quantity")
      if qty is not None and not _is_int_like(qty):
        raise ValueError(f"Line item quantity must be an integer (got {qty!r}) in order {oid}")


def validate_ledger_data(
    containers: List[Dict[str, Any]],
    entries: List[Dict[str, Any]],
    orders: List[Dict[str, Any]],
) -> None:
  """Validate a full snapshot, including order links to known containers."""
  validate_containers(containers)
  ids = {str(c["id"]) for c in containers}
  validate_capacity_entries(entries, ids)
  validate_orders(orders)
  for o in orders:
    cid = o.get("container_id")
    if cid is not None and str(cid) not in ids:
      raise ValueError(f"Order {o['id']} is linked to unknown container {cid!r}")


def validate_settings_payload(data: dict) -> dict:
  """Validate a settings JSON object.

  Args:
    data: Parsed JSON object; every key is optional.

  Returns:
    The payload with numeric values coerced to their types.

  Raises:
    ValueError: If structure or values are invalid.
  """
  if not isinstance(data, dict):
    raise ValueError("Settings file must contain a JSON object.")
  known = {
    "excluded_product_terms",
    "max_orders_per_issue",
    "max_issues_reported",
    "lock_timeout_seconds",
    "solver_time_limit_seconds",
  }
  unknown = sorted(set(data) - known)
  if unknown:
    raise ValueError(f"Settings file has unknown keys: {unknown}")

  out: dict = {}
  if "excluded_product_terms" in data:
    terms = data["excluded_product_terms"]
    if isinstance(terms, (str, bytes)) or not isinstance(terms, list):
      raise ValueError("excluded_product_terms must be a list of strings")
    if not all(isinstance(t, str) and t.strip() for t in terms):
      raise ValueError("excluded_product_terms entries must be non-blank strings")
    out["excluded_product_terms"] = list(terms)
  for key in ("max_orders_per_issue", "max_issues_reported"):
    if key in data:
      if not _is_int_like(data[key]) or int(data[key]) < 1:
        raise ValueError(f"{key} must be an integer >= 1")
      out[key] = int(data[key])
  for key in ("lock_timeout_seconds", "solver_time_limit_seconds"):
    if key in data:
      try:
        val = float(data[key])
      except (TypeError, ValueError):
        raise ValueError(f"{key} must be numeric")
      if val <= 0:
        raise ValueError(f"{key} must be > 0")
      out[key] = val
  return out
