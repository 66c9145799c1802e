"""
normalize.py - Schema Validator & Normalizer.

Turns a ParsedReceipt (any JSON shape the model chose) into a ReceiptRecord:

    coerce_decimal(value)         -> Decimal | None, raises CoercionError
    normalize_description(value)  -> whitespace-collapsed text
    parse_receipt_date(value)     -> datetime.date | None, raises CoercionError
    validate_receipt(parsed)      -> (ReceiptRecord | None, diagnostics)

Design principles:
    - A bad field drops that field, a bad item drops that item, never the record
    - Missing price is "unknown", not "free"
    - Zero surviving items is a terminal EMPTY_RESULT
"""

from __future__ import annotations

import datetime as dt
import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence

from dateutil import parser as dateparser
from pydantic import ValidationError

from logging_config import get_logger
from models import (
    CENT,
    MAX_AMOUNT,
    DiagnosticKind,
    ExtractionDiagnostic,
    LineItem,
    PipelineStage,
    ReceiptRecord,
    Severity,
)
from parse import ParsedReceipt

logger = get_logger(__name__)


class CoercionError(ValueError):
    """A value could not be converted unambiguously to the expected type."""


MISSING_TOKENS = {"", "n/a", "na", "none", "null", "unknown", "-", "--"}

ITEM_KEYS: dict[str, tuple[str, ...]] = {
    "description": ("description", "name", "item", "itemName", "product"),
    "quantity": ("quantity", "qty", "count"),
    "unit_price": ("unitPrice", "unit_price", "price", "unitCost"),
    "line_total": ("amount", "lineTotal", "line_total", "total", "extendedPrice"),
    "category": ("category",),
    "subcategory": ("subcategory", "sub_category"),
    "feed_weight": ("feedWeight", "feed_weight", "feedWeightLbs"),
    "unit_of_measure": ("unitOfMeasure", "unit_of_measure", "unit", "uom"),
}
RECORD_KEYS: dict[str, tuple[str, ...]] = {
    "vendor": ("vendor", "vendorName", "store", "merchant"),
    "date": ("date", "purchaseDate", "transactionDate"),
    "total": ("total", "totalAmount", "grandTotal"),
    "tax": ("tax", "taxAmount"),
    "receipt_number": ("receiptNumber", "receipt_number", "invoice", "invoiceNumber"),
    "items": ("items", "lineItems", "line_items"),
}

CURRENCY_PREFIX_RE = re.compile(r"^(?:usd|us\$|\$|€|£|¥)\s*", re.IGNORECASE)
UNIT_SUFFIX_RE = re.compile(r"\s*(?:usd|ea|each|/\s*ea|per\s+[a-z]+)\.?$", re.IGNORECASE)
PLAIN_NUMBER_RE = re.compile(r"^(?:\d+(?:\.\d+)?|\.\d+|\d+\.)$")
GROUPED_NUMBER_RE = re.compile(r"^\d{1,3}(?:,\d{3})+(?:\.\d+)?$")


def _bounded(number: Decimal, value: Any) -> Decimal:
    if abs(number) >= MAX_AMOUNT:
        raise CoercionError(f"implausibly large amount {value!r}")
    return number


def coerce_decimal(value: Any) -> Optional[Decimal]:
    """Convert a JSON number or a formatted money string to Decimal.

    Accepts "$1,400.00", "USD 12", "24.99 ea", "(5.00)". Returns None for
    blank/null-like values. Raises CoercionError when the text is ambiguous
    (two decimal points, bad thousands grouping, letters), not finite, or at
    least MAX_AMOUNT in magnitude.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise CoercionError(f"boolean {value!r} is not a number")
    if isinstance(value, int):
        return _bounded(Decimal(value), value)
    if isinstance(value, (float, Decimal)):
        number = Decimal(str(value)) if isinstance(value, float) else value
        if not number.is_finite():
            raise CoercionError(f"non-finite number {value!r}")
        return _bounded(number, value)
    if not isinstance(value, str):
        raise CoercionError(f"{type(value).__name__} is not a number")

    text = value.strip()
    if text.lower() in MISSING_TOKENS:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1].strip()
    text = CURRENCY_PREFIX_RE.sub("", text)
    if text.startswith("-"):
        negative = True
        text = CURRENCY_PREFIX_RE.sub("", text[1:].strip())
    text = UNIT_SUFFIX_RE.sub("", text).strip()

    if text.count(".") > 1:
        raise CoercionError(f"multiple decimal points in {value!r}")
    if GROUPED_NUMBER_RE.match(text):
        text = text.replace(",", "")
    elif not PLAIN_NUMBER_RE.match(text):
        raise CoercionError(f"cannot read a number from {value!r}")

    try:
        number = Decimal(text)
    except InvalidOperation as exc:
        raise CoercionError(f"cannot read a number from {value!r}") from exc
    return _bounded(-number if negative else number, value)


def normalize_description(value: Any) -> str:
    """Collapse whitespace; numbers are stringified, anything else is empty."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float, Decimal)):
        value = str(value)
    if not isinstance(value, str):
        return ""
    return " ".join(value.split())


def _optional_text(value: Any) -> Optional[str]:
    text = normalize_description(value)
    if text.lower() in MISSING_TOKENS:
        return None
    return text


def parse_receipt_date(value: Any) -> Optional[dt.date]:
    """Parse a purchase date. Partial dates ("2024", "09/24") are rejected."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        raise CoercionError(f"{type(value).__name__} is not a date")

    text = value.strip()
    if text.lower() in MISSING_TOKENS:
        return None
    if not any(char.isdigit() for char in text):
        raise CoercionError(f"no digits in date {value!r}")
    if (
        re.fullmatch(r"\d+", text)
        or re.fullmatch(r"\d{1,2}[/-]\d{2,4}", text)
        or re.fullmatch(r"[A-Za-z]{3,9}\.?\s+\d{4}", text)
    ):
        raise CoercionError(f"incomplete date {value!r}")

    try:
        parsed = dateparser.parse(text, dayfirst=False)
    except (ValueError, OverflowError) as exc:
        raise CoercionError(f"unparsable date {value!r}") from exc
    if parsed is None:
        raise CoercionError(f"unparsable date {value!r}")
    return parsed.date()


def _lookup(data: Mapping[str, Any], keys: Sequence[str]) -> tuple[bool, Any]:
    """Case-insensitive first-match lookup over alias keys."""
    lowered = {str(key).lower(): key for key in data}
    for key in keys:
        actual = lowered.get(key.lower())
        if actual is not None:
            return True, data[actual]
    return False, None


def _render_fragment(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    try:
        return json.dumps(raw, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return repr(raw)


def _diag(
    kind: DiagnosticKind,
    message: str,
    severity: Severity = Severity.WARNING,
    fragment: object = None,
    item_index: Optional[int] = None,
) -> ExtractionDiagnostic:
    return ExtractionDiagnostic.create(
        PipelineStage.VALIDATE,
        kind,
        message,
        severity=severity,
        fragment=fragment,
        item_index=item_index,
    )


def _derive_unit_price(line_total: Decimal, quantity: Decimal) -> Decimal:
    price = line_total / quantity
    if price >= MAX_AMOUNT:
        raise CoercionError(f"derived unit price {line_total} / {quantity} is implausibly large")
    if price == price.quantize(CENT):
        return price.quantize(CENT)
    return price.quantize(Decimal("0.0001"))


def validate_item(
    raw: Any, index: int, fragment: Optional[str] = None
) -> tuple[Optional[LineItem], list[ExtractionDiagnostic]]:
    """Validate one candidate line item. Returns (None, diags) when it is dropped."""
    fragment = fragment if fragment is not None else _render_fragment(raw)
    diagnostics: list[ExtractionDiagnostic] = []

    def drop(message: str) -> tuple[None, list[ExtractionDiagnostic]]:
        diagnostics.append(_diag(DiagnosticKind.FIELD_COERCION_ERROR, message, fragment=fragment, item_index=index))
        logger.info("validate_item_dropped | index=%s | reason=%s", index, message)
        return None, diagnostics

    if isinstance(raw, str):
        raw = {"description": raw}
    if not isinstance(raw, Mapping):
        return drop(f"Item {index} is a {type(raw).__name__}, not an object")

    fields = {name: _lookup(raw, keys)[1] for name, keys in ITEM_KEYS.items()}

    description = normalize_description(fields["description"])
    if not description:
        return drop(f"Item {index} has no description")

    try:
        quantity = coerce_decimal(fields["quantity"])
    except CoercionError as exc:
        return drop(f"Item {index} quantity: {exc}")
    if quantity is None:
        quantity = Decimal("1")
    elif quantity <= 0:
        return drop(f"Item {index} quantity must be positive, got {quantity}")

    try:
        unit_price = coerce_decimal(fields["unit_price"])
    except CoercionError as exc:
        return drop(f"Item {index} unit price: {exc}")
    if unit_price is not None and unit_price < 0:
        return drop(f"Item {index} unit price is negative ({unit_price})")

    reported_line_total: Optional[Decimal] = None
    try:
        reported_line_total = coerce_decimal(fields["line_total"])
    except CoercionError as exc:
        diagnostics.append(
            _diag(
                DiagnosticKind.FIELD_COERCION_ERROR,
                f"Item {index} line total ignored: {exc}",
                fragment=fragment,
                item_index=index,
            )
        )
    if reported_line_total is not None and reported_line_total < 0:
        diagnostics.append(
            _diag(
                DiagnosticKind.FIELD_COERCION_ERROR,
                f"Item {index} line total ignored: negative ({reported_line_total})",
                fragment=fragment,
                item_index=index,
            )
        )
        reported_line_total = None

    price_known = True
    if unit_price is None:
        if reported_line_total is not None:
            try:
                unit_price = _derive_unit_price(reported_line_total, quantity)
            except CoercionError as exc:
                return drop(f"Item {index} unit price: {exc}")
        else:
            unit_price = Decimal("0")
            price_known = False
            diagnostics.append(
                _diag(
                    DiagnosticKind.PRICE_UNKNOWN,
                    f"No price for {description!r}; unit price set to 0 pending review",
                    severity=Severity.INFO,
                    fragment=fragment,
                    item_index=index,
                )
            )

    feed_weight: Optional[Decimal] = None
    try:
        feed_weight = coerce_decimal(fields["feed_weight"])
    except CoercionError as exc:
        diagnostics.append(
            _diag(
                DiagnosticKind.FIELD_COERCION_ERROR,
                f"Item {index} feed weight ignored: {exc}",
                fragment=fragment,
                item_index=index,
            )
        )
    if feed_weight is not None and feed_weight < 0:
        feed_weight = None

    try:
        item = LineItem(
            description=description,
            quantity=quantity,
            unit_price=unit_price,
            price_known=price_known,
            reported_category=_optional_text(fields["category"]),
            reported_subcategory=_optional_text(fields["subcategory"]),
            reported_line_total=reported_line_total,
            unit_of_measure=_optional_text(fields["unit_of_measure"]),
            feed_weight_lbs=feed_weight,
            raw_fragment=fragment,
        )
    except ValidationError as exc:
        return drop(f"Item {index} failed validation: {exc.errors()[0]['msg']}")

    if item.has_line_total_discrepancy:
        diagnostics.append(
            _diag(
                DiagnosticKind.LINE_TOTAL_MISMATCH,
                (
                    f"{description!r}: reported line total {reported_line_total} != "
                    f"{quantity} x {unit_price} = {item.line_total}"
                ),
                fragment=fragment,
                item_index=index,
            )
        )
    return item, diagnostics


def _split_payload(payload: Any) -> tuple[Mapping[str, Any], list[Any]]:
    """Return (record-level fields, raw item list) for any accepted shape."""
    if isinstance(payload, list):
        return {}, payload
    if not isinstance(payload, Mapping):
        return {}, []

    found, items = _lookup(payload, RECORD_KEYS["items"])
    if not found:
        # A single item object with no wrapper.
        if _lookup(payload, ITEM_KEYS["description"])[0]:
            return {}, [payload]
        return payload, []
    if isinstance(items, Mapping):
        items = [items]
    elif not isinstance(items, list):
        items = []
    return payload, items


def _record_decimal(
    fields: Mapping[str, Any], name: str, diagnostics: list[ExtractionDiagnostic]
) -> Optional[Decimal]:
    raw = _lookup(fields, RECORD_KEYS[name])[1]
    try:
        value = coerce_decimal(raw)
    except CoercionError as exc:
        diagnostics.append(_diag(DiagnosticKind.FIELD_COERCION_ERROR, f"Receipt {name} ignored: {exc}", fragment=raw))
        return None
    if value is not None and value < 0:
        diagnostics.append(
            _diag(DiagnosticKind.FIELD_COERCION_ERROR, f"Receipt {name} ignored: negative ({value})", fragment=raw)
        )
        return None
    return value


def validate_receipt(parsed: ParsedReceipt) -> tuple[Optional[ReceiptRecord], list[ExtractionDiagnostic]]:
    """Validate and normalize a parsed payload into a ReceiptRecord."""
    diagnostics: list[ExtractionDiagnostic] = []
    fields, raw_items = _split_payload(parsed.payload)

    items: list[LineItem] = []
    for index, raw in enumerate(raw_items):
        fragment = parsed.item_fragments[index] if index < len(parsed.item_fragments) else None
        item, notes = validate_item(raw, index, fragment)
        diagnostics.extend(notes)
        if item is not None:
            items.append(item)

    if not items:
        diagnostics.append(
            _diag(
                DiagnosticKind.EMPTY_RESULT,
                f"No usable line items after normalization ({len(raw_items)} candidate(s))",
                severity=Severity.ERROR,
            )
        )
        logger.warning("validate_empty_result | candidates=%s", len(raw_items))
        return None, diagnostics

    purchase_date: Optional[dt.date] = None
    raw_date = _lookup(fields, RECORD_KEYS["date"])[1]
    try:
        purchase_date = parse_receipt_date(raw_date)
    except CoercionError as exc:
        diagnostics.append(_diag(DiagnosticKind.FIELD_COERCION_ERROR, f"Receipt date ignored: {exc}", fragment=raw_date))

    total = _record_decimal(fields, "total", diagnostics)
    tax = _record_decimal(fields, "tax", diagnostics)

    record = ReceiptRecord(
        vendor=_optional_text(_lookup(fields, RECORD_KEYS["vendor"])[1]),
        date=purchase_date,
        receipt_number=_optional_text(_lookup(fields, RECORD_KEYS["receipt_number"])[1]),
        items=items,
        tax=tax,
        total=total,
    )

    if total is not None and all(item.price_known for item in items):
        candidates = [record.items_total]
        if tax is not None:
            candidates.append(record.items_total + tax)
        if all(abs(total - candidate) > CENT for candidate in candidates):
            diagnostics.append(
                _diag(
                    DiagnosticKind.TOTAL_MISMATCH,
                    f"Reported total {total} differs from item sum {record.items_total}"
                    + (f" (+ tax {tax})" if tax is not None else ""),
                    severity=Severity.INFO,
                )
            )

    logger.debug(
        "validate_complete | candidates=%s | kept=%s | notes=%s",
        len(raw_items),
        len(items),
        len(diagnostics),
    )
    return record, diagnostics
