# --------------------------- Reporting utilities ---------------------------
from typing import List

from allocation_types import (
    BatchResult,
    CascadeResult,
    DisplacementPlan,
    InventoryStatusRow,
    SkippedRow,
    ValidationReport,
)


def inventory_markdown(rows: List[InventoryStatusRow]) -> str:
    """One table per container: Product | Declared | Remaining."""
    parts: List[str] = []
    for row in rows:
        eta = row["eta"].isoformat() if row["eta"] else "N/A"
        header = (
            f"### Container {row['container_code']}, ETA: {eta}\n\n"
            "| Product | Declared | Remaining |\n|---|---|---|\n"
        )
        lines = [f"| {p['product_key']} | {p['total_quantity']} | {p['remaining']} |" for p in row["products"]]
        if not lines:
            lines.append("| *(none)* | - | - |")
        parts.append(header + "\n".join(lines) + "\n")
    return "\n".join(parts)


def skipped_markdown(skipped: List[SkippedRow]) -> str:
    header = "### Skipped orders\n\n| Order | Reason | Products needed |\n|---|---|---|\n"
    rows = []
    for s in skipped:
        needed = ", ".join(f"{k} x{q}" for k, q in sorted(s["products_needed"].items())) or s["detail"]
        rows.append(f"| {s['external_number']} | {s['reason']} | {needed} |")
    if not rows:
        rows.append("| *(none)* | - | - |")
    return header + "\n".join(rows) + "\n"


def batch_markdown(result: BatchResult) -> str:
    """Markdown report of a batch run: summary, allocations, skips, inventory."""
    s = result["summary"]
    reasons = ", ".join(f"{k}: {v}" for k, v in s["skipped_reasons"].items() if v) or "none"
    summary = (
        f"## Batch allocation\n\n"
        f"Allocated {s['allocated_count']} of {s['orders_considered']} unlinked order(s); "
        f"{s['skipped_count']} skipped ({reasons}). "
        f"{s['frozen_orders_count']} linked order(s) left untouched.\n"
    )
    alloc_header = "### Allocations\n\n| Order | Container | Delivery ETA |\n|---|---|---|\n"
    alloc_rows = [
        f"| {a['external_number']} | {a['container_code']} | {a['delivery_eta'].isoformat() if a['delivery_eta'] else 'N/A'} |"
        for a in result["allocations"]
    ]
    if not alloc_rows:
        alloc_rows.append("| *(none)* | - | - |")
    return "\n".join([
        summary,
        alloc_header + "\n".join(alloc_rows) + "\n",
        skipped_markdown(result["skipped"]),
        inventory_markdown(result["inventory_status"]),
    ])


def cascade_markdown(result: CascadeResult) -> str:
    lines = [
        f"## Removal of order {result['removed_order_id']} ({result['action']})\n",
        f"Reconsidered {len(result['reconsidered'])} later order(s); "
        f"{len(result['reallocated'])} reallocated, {len(result['regressed'])} now unallocated.\n",
    ]
    for a in result["reallocated"]:
        lines.append(f"- {a['external_number']} -> {a['container_code']}")
    for r in result["regressed"]:
        lines.append(f"- {r['external_number']} unallocated ({r['reason']})")
    return "\n".join(lines) + "\n"


def validation_markdown(report: ValidationReport) -> str:
    header = (
        f"## Allocation validation\n\n{report['message']}\n\n"
        "| Container | Product | Declared | Linked | Over | Orders |\n|---|---|---|---|---|---|\n"
    )
    rows = []
    for i in report["issues"]:
        product = i["product_key"] if i["declared"] else f"{i['product_key']} (not on manifest)"
        rows.append(
            f"| {i['container_code']} | {product} | {i['total_quantity']} | {i['allocated_quantity']} "
            f"| {i['over_allocated']} | {', '.join(i['orders'])} |"
        )
    if not rows:
        rows.append("| *(none)* | - | - | - | - | - |")
    footer = "\n*(more issues not shown)*\n" if report["has_more"] else ""
    return header + "\n".join(rows) + "\n" + footer


def displacement_markdown(plan: DisplacementPlan) -> str:
    header = (
        f"## Displacement suggestion for {plan['container_code']} ({plan['solver_status']})\n\n"
        f"Unlink: {', '.join(plan['unlink_external_numbers']) or '(none)'}\n\n"
        "| Product | Capacity | Usage after |\n|---|---|---|\n"
    )
    rows = [f"| {k} | {plan['capacity'][k]} | {plan['usage_after'].get(k, 0)} |" for k in sorted(plan["capacity"])]
    return header + "\n".join(rows) + "\n"
