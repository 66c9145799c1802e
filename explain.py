"""
explain.py - Human-readable and JSON-ready result formatting.

This module converts a `ReceiptExtractionResult` into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for the HTTP API and batch files

Both outputs carry a spending summary: totals per category, feed weight and
feed cost, and how many items need a manual look.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from logging_config import get_logger
from models import (
    CENT,
    Category,
    ExtractionStatus,
    LineItem,
    ReceiptExtractionResult,
    ReceiptRecord,
    Severity,
)

logger = get_logger(__name__)

STATUS_HEADERS: dict[ExtractionStatus, str] = {
    ExtractionStatus.OK: "Receipt Extracted",
    ExtractionStatus.DEGRADED: "Receipt Extracted - Review Suggested",
    ExtractionStatus.FAILED: "EXTRACTION FAILED",
}
SEVERITY_MARKS: dict[Severity, str] = {
    Severity.INFO: "i",
    Severity.WARNING: "!",
    Severity.ERROR: "x",
}

OUTPUT_WIDTH = 56
SEPARATOR = "=" * OUTPUT_WIDTH
MAX_DIAGNOSTIC_DISPLAY = 8
MAX_RAW_PREVIEW = 300
OTHER_FEED_GROUP = "other"


def _money(value: Optional[Decimal]) -> str:
    return "unknown" if value is None else f"${value:,.2f}"


def _qty(value: Decimal) -> str:
    return f"{value.normalize():f}"


def _category_label(item: LineItem) -> str:
    return f"{item.category}/{item.subcategory}" if item.subcategory else item.category


def build_summary(record: ReceiptRecord) -> dict[str, Any]:
    """Spending summary for a record. Keys are camelCase like the wire format."""
    category_totals: dict[str, Decimal] = {}
    feed_weight = Decimal("0")
    feed_cost = Decimal("0")
    # subcategory -> [weight, cost], feed items without a subcategory under "other"
    feed_groups: dict[str, list[Decimal]] = {}
    for item in record.items:
        category_totals[item.category] = category_totals.get(item.category, Decimal("0")) + item.line_total
        if item.category == Category.FEED_SUPPLIES.value:
            weight = Decimal("0")
            if item.feed_weight_lbs is not None:
                weight = item.feed_weight_lbs * item.quantity
            feed_weight += weight
            feed_cost += item.line_total
            group = feed_groups.setdefault(item.subcategory or OTHER_FEED_GROUP, [Decimal("0"), Decimal("0")])
            group[0] += weight
            group[1] += item.line_total

    return {
        "itemCount": len(record.items),
        "itemsTotal": float(record.items_total),
        "categoryTotals": {name: float(total.quantize(CENT)) for name, total in category_totals.items()},
        "feedWeightLbs": float(feed_weight.quantize(CENT)),
        "feedCost": float(feed_cost.quantize(CENT)),
        "feedBreakdown": {
            name: {"weightLbs": float(weight.quantize(CENT)), "cost": float(cost.quantize(CENT))}
            for name, (weight, cost) in feed_groups.items()
        },
        "itemsNeedingReview": sum(1 for item in record.items if item.needs_review),
    }


def format_result(result: ReceiptExtractionResult | None) -> str:
    """Format an extraction result into a clean, human-readable text block."""
    if result is None:
        logger.error("explain_input_error | result_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n" + "  ERROR: No extraction result available\n" + SEPARATOR + "\n"

    try:
        lines: list[str] = [""]
        lines.append(SEPARATOR)
        lines.append(f"  {STATUS_HEADERS.get(result.status, result.status.value)}")
        lines.append(SEPARATOR)

        record = result.record
        if record is not None:
            lines.append("")
            lines.append(f"  Vendor:       {record.vendor or '(unknown vendor)'}")
            lines.append(
                f"                {record.date.isoformat() if record.date else 'date unknown'}"
                + (f"  |  #{record.receipt_number}" if record.receipt_number else "")
            )
            lines.append(f"  Total:        {_money(record.total)}  (items {_money(record.items_total)})")
            if record.tax is not None:
                lines.append(f"  Tax:          {_money(record.tax)}")
            if result.parse_layer is not None:
                lines.append(f"  Parsed by:    {result.parse_layer.value} layer")

            lines.append("")
            lines.append("  Items:")
            for item in record.items:
                price = _money(item.unit_price) if item.price_known else "price unknown"
                flag = "  [review]" if item.needs_review else ""
                lines.append(f"    • {item.description}")
                lines.append(f"        {_qty(item.quantity)} x {price} = {_money(item.line_total)}  |  {_category_label(item)}{flag}")

            summary = build_summary(record)
            lines.append("")
            lines.append("  By category:")
            for name, total in summary["categoryTotals"].items():
                lines.append(f"    • {name}: ${total:,.2f}")
            if summary["feedWeightLbs"]:
                lines.append(
                    f"  Feed: {summary['feedWeightLbs']:,.2f} lbs for ${summary['feedCost']:,.2f}"
                )
                for name, group in summary["feedBreakdown"].items():
                    lines.append(f"    • {name}: {group['weightLbs']:,.2f} lbs, ${group['cost']:,.2f}")
        else:
            lines.append("")
            lines.append("  No usable receipt could be extracted.")

        lines.append("")
        lines.append("  Diagnostics:")
        diagnostics = list(result.diagnostics)
        shown = diagnostics
        if len(diagnostics) > MAX_DIAGNOSTIC_DISPLAY:
            shown = diagnostics[: MAX_DIAGNOSTIC_DISPLAY - 1]
        if not diagnostics:
            lines.append("    • (none)")
        for diagnostic in shown:
            where = f" item {diagnostic.item_index}" if diagnostic.item_index is not None else ""
            lines.append(
                f"    {SEVERITY_MARKS.get(diagnostic.severity, '-')} [{diagnostic.stage.value}{where}] {diagnostic.message}"
            )
        if len(shown) < len(diagnostics):
            lines.append(f"    • ... and {len(diagnostics) - len(shown)} more diagnostic(s)")

        if result.status == ExtractionStatus.FAILED:
            preview = result.raw_response[:MAX_RAW_PREVIEW]
            lines.append("")
            lines.append("  Raw response:")
            lines.append("    " + (preview.replace("\n", "\n    ") if preview else "(empty)"))
            if len(result.raw_response) > MAX_RAW_PREVIEW:
                lines.append(f"    ... ({len(result.raw_response) - MAX_RAW_PREVIEW} more chars)")

        lines.append("")
        lines.append(SEPARATOR)
        lines.append("")
        return "\n".join(lines)
    except Exception as exc:
        logger.error(
            "explain_format_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        return (
            "\n"
            + SEPARATOR
            + "\n"
            + "  RESULT FORMAT ERROR\n"
            + SEPARATOR
            + "\n\n"
            + f"  Error: {type(exc).__name__}: {exc}\n\n"
            + SEPARATOR
            + "\n"
        )


def format_result_json(result: ReceiptExtractionResult | None) -> dict:
    """Format a result as a camelCase JSON-compatible dictionary with a summary."""
    if result is None:
        logger.error("explain_json_input_error | result_none=True | fallback=error_payload")
        return {
            "status": ExtractionStatus.FAILED.value,
            "record": None,
            "diagnostics": [],
            "rawResponse": "",
            "parseLayer": None,
            "summary": None,
        }

    payload = result.model_dump(mode="json", by_alias=True)
    payload["summary"] = build_summary(result.record) if result.record is not None else None
    return payload
