"""
parse.py - Layered Parser.

Turns a JsonSpan into a ParsedReceipt by trying progressively more lenient
strategies until one succeeds:

    1. strict     json.loads on the exact span
    2. repair     close an unterminated string, drop a dangling key or comma,
                  remove trailing commas, append missing closers; optionally
                  retry from the last complete nested value
    3. heuristic  regular-expression recovery of "key": value pairs per object
                  fragment, or of plain "[qty] description $price" lines

The strategies share one signature, `(span, config) -> (parsed, diagnostics)`,
and live in an ordered tuple; the first non-None result wins. A failing
strategy is recorded and the next one runs. Only when every enabled layer
fails does the outcome carry a terminal PARSE_FAILURE.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from boundary import JsonSpan, scan_structure
from config import DEFAULT_CONFIG, PipelineConfig
from logging_config import get_logger
from models import DiagnosticKind, ExtractionDiagnostic, ParseLayer, PipelineStage, Severity

logger = get_logger(__name__)


@dataclass(frozen=True)
class ParsedReceipt:
    """Result of a successful parse attempt, before validation.

    `payload` is whatever JSON shape the response used (object or array).
    `item_fragments` holds the source text of each recovered item when the
    heuristic layer built the payload; structured layers leave it empty and
    the validator renders fragments from the parsed items.
    """

    payload: Any
    layer: ParseLayer
    item_fragments: tuple[str, ...] = ()


@dataclass(frozen=True)
class ParseOutcome:
    parsed: Optional[ParsedReceipt]
    diagnostics: list[ExtractionDiagnostic] = field(default_factory=list)
    attempted: tuple[ParseLayer, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.parsed is not None


StrategyResult = tuple[Optional[ParsedReceipt], list[ExtractionDiagnostic]]
Strategy = Callable[[JsonSpan, PipelineConfig], StrategyResult]


def _note(message: str, severity: Severity = Severity.INFO, fragment: object = None,
          kind: DiagnosticKind = DiagnosticKind.PARSE_FAILURE) -> ExtractionDiagnostic:
    return ExtractionDiagnostic.create(PipelineStage.PARSE, kind, message, severity=severity, fragment=fragment)


def _is_structured(payload: Any) -> bool:
    return isinstance(payload, (dict, list))


# -- Layer 1: strict --


def _parse_strict(span: JsonSpan, config: PipelineConfig) -> StrategyResult:
    if not span.text.strip():
        return None, [_note("Strict parse skipped: span is empty")]
    try:
        payload = json.loads(span.text)
    except json.JSONDecodeError as exc:
        return None, [_note(f"Strict parse failed: {exc.msg} at char {exc.pos}", fragment=_around(span.text, exc.pos))]
    if not _is_structured(payload):
        return None, [_note(f"Strict parse produced a {type(payload).__name__}, not an object or array")]
    return ParsedReceipt(payload=payload, layer=ParseLayer.STRICT), []


def _around(text: str, pos: int, radius: int = 30) -> str:
    return text[max(0, pos - radius): pos + radius]


# -- Layer 2: repair --

# "key": at the end of text, optionally preceded by its comma.
DANGLING_KEY_RE = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:\s*$')
# A string directly after `{` or `,` at the end of text (a key without value
# when the innermost container is an object).
TRAILING_STRING_RE = re.compile(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*$')
PARTIAL_NUMBER_RE = re.compile(r"(\d)[.eE+-]+$")
PARTIAL_LITERAL_RE = re.compile(r"([:\[,]\s*)(?:t|tr|tru|f|fa|fal|fals|n|nu|nul)$")


def strip_trailing_commas(text: str) -> str:
    """Remove commas that directly precede `}` or `]`, outside string literals."""
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)
    index = 0
    while index < length:
        char = text[index]
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            index += 1
            continue
        if char == '"':
            in_string = True
        elif char == ",":
            look = index + 1
            while look < length and text[look] in " \t\r\n":
                look += 1
            if look < length and text[look] in "}]":
                index += 1
                continue
        out.append(char)
        index += 1
    return "".join(out)


def _drop_dangling_tail(text: str) -> str:
    """Trim an incomplete trailing member: `,`, `"key":`, a bare key, `24.`, `tru`."""
    while True:
        text = text.rstrip()
        if text.endswith(","):
            text = text[:-1]
            continue

        match = DANGLING_KEY_RE.search(text)
        if match:
            text = text[: match.start()]
            continue

        match = TRAILING_STRING_RE.search(text)
        if match:
            keep = match.start(1) + 1
            state = scan_structure(text[:keep])
            if state.open_stack and state.open_stack[-1] == "{" and not state.in_string:
                text = text[:keep]
                continue

        match = PARTIAL_LITERAL_RE.search(text)
        if match:
            text = text[: match.end(1)] + "null"
            continue

        match = PARTIAL_NUMBER_RE.search(text)
        if match:
            text = text[: match.end(1)]
            continue

        return text


def repair_json_text(text: str) -> tuple[str, list[str]]:
    """Apply the light repair pass to structured text.

    Returns the repaired text and a list of the fixes that changed it.
    """
    fixes: list[str] = []
    state = scan_structure(text)

    if state.in_string:
        text += '"'
        fixes.append("closed unterminated string")

    trimmed = _drop_dangling_tail(text)
    if trimmed != text.rstrip():
        fixes.append("dropped incomplete trailing member")
    text = trimmed

    without_commas = strip_trailing_commas(text)
    if without_commas != text:
        fixes.append("removed trailing commas")
    text = without_commas

    state = scan_structure(text)
    if not state.balanced:
        closers = state.missing_closers()
        if closers:
            text += closers
            fixes.append(f"appended missing closers {closers!r}")

    return text, fixes


def _repair_candidates(span: JsonSpan) -> list[tuple[str, str]]:
    candidates = [("full span", span.text)]
    if span.truncated and span.last_complete is not None and span.last_complete < len(span.text):
        candidates.append(("cut to last complete value", span.text[: span.last_complete]))
    return candidates


def _parse_repaired(span: JsonSpan, config: PipelineConfig) -> StrategyResult:
    if not span.found:
        return None, [_note("Repair skipped: no structured span to repair")]

    notes: list[ExtractionDiagnostic] = []
    for label, candidate in _repair_candidates(span)[: config.max_repair_attempts]:
        repaired, fixes = repair_json_text(candidate)
        if not fixes and candidate == span.text:
            notes.append(_note(f"Repair ({label}) found nothing to fix"))
            continue
        try:
            payload = json.loads(repaired)
        except json.JSONDecodeError as exc:
            notes.append(
                _note(
                    f"Repair ({label}) still unparseable: {exc.msg} at char {exc.pos}",
                    fragment=_around(repaired, exc.pos),
                )
            )
            continue
        if not _is_structured(payload):
            notes.append(_note(f"Repair ({label}) produced a {type(payload).__name__}"))
            continue

        logger.info("parse_repair_success | candidate=%r | fixes=%s", label, fixes)
        notes.append(
            _note(
                f"Parsed after repair ({label}): {'; '.join(fixes) or 'no textual change'}",
                severity=Severity.WARNING,
                kind=DiagnosticKind.REPAIR_APPLIED,
                fragment=repaired[-80:],
            )
        )
        return ParsedReceipt(payload=payload, layer=ParseLayer.REPAIR), notes

    return None, notes


# -- Layer 3: heuristic --

_STRING_VALUE = r'"((?:[^"\\]|\\.)*)"'
_NUMBER_VALUE = r"(-?\$?\d+(?:,\d{3})*(?:\.\d+)?)"


def _field_re(*keys: str) -> re.Pattern[str]:
    names = "|".join(re.escape(key) for key in keys)
    return re.compile(
        r'"(?:%s)"\s*:\s*(?:%s|%s|(null|true|false))' % (names, _STRING_VALUE, _NUMBER_VALUE),
        re.IGNORECASE,
    )


ITEM_FIELDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("description", _field_re("description", "name", "item", "itemName", "product")),
    ("quantity", _field_re("quantity", "qty", "count")),
    ("unitPrice", _field_re("unitPrice", "unit_price", "price", "unitCost")),
    ("amount", _field_re("amount", "lineTotal", "line_total", "extendedPrice", "total")),
    ("category", _field_re("category")),
    ("subcategory", _field_re("subcategory", "sub_category")),
    ("feedWeight", _field_re("feedWeight", "feed_weight")),
    ("unitOfMeasure", _field_re("unitOfMeasure", "unit_of_measure", "unit")),
)
RECORD_FIELDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("vendor", _field_re("vendor", "vendorName", "store", "merchant")),
    ("date", _field_re("date", "purchaseDate", "transactionDate")),
    ("total", _field_re("total", "totalAmount", "grandTotal")),
    ("tax", _field_re("tax", "taxAmount")),
    ("receiptNumber", _field_re("receiptNumber", "receipt_number", "invoice")),
)

# Text between an opening brace and the next brace of either kind.
OBJECT_FRAGMENT_RE = re.compile(r"\{[^{}]*\}?")

LINE_ITEM_RE = re.compile(
    r"^\s*(?:(?P<qty>\d+(?:\.\d+)?)\s*(?:x|@)?\s+)?"
    r"(?P<desc>[^$\n]*?[A-Za-z][^$\n]*?)\s+"
    r"\$?(?P<amount>\d[\d,]*\.\d{2})\s*$",
    re.IGNORECASE,
)
NON_ITEM_LINE_RE = re.compile(
    r"thank you|receipt|subtotal|sub-total|\btax\b|total|cash|change|\bcard\b|approved|"
    r"signature|balance|tender|payment|visa|mastercard|debit|credit",
    re.IGNORECASE,
)


def _field_value(match: re.Match[str]) -> Any:
    string_value, number_value, literal = match.group(1), match.group(2), match.group(3)
    if string_value is not None:
        try:
            return json.loads(f'"{string_value}"')
        except json.JSONDecodeError:
            return string_value
    if number_value is not None:
        return number_value
    return {"null": None, "true": True, "false": False}[literal.lower()]


def _extract_fields(text: str, patterns: tuple[tuple[str, re.Pattern[str]], ...]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for name, pattern in patterns:
        match = pattern.search(text)
        if match:
            fields[name] = _field_value(match)
    return fields


def _heuristic_key_values(text: str) -> tuple[dict[str, Any], list[dict[str, Any]], list[str]]:
    items: list[dict[str, Any]] = []
    fragments: list[str] = []
    item_spans: list[tuple[int, int]] = []

    for match in OBJECT_FRAGMENT_RE.finditer(text):
        fragment = match.group(0)
        fields = _extract_fields(fragment, ITEM_FIELDS)
        if "description" not in fields:
            continue
        # A record-level "total" inside the header fragment is not an item.
        if not ("quantity" in fields or "unitPrice" in fields or "amount" in fields or "category" in fields):
            if _extract_fields(fragment, RECORD_FIELDS).get("vendor") is not None:
                continue
        items.append(fields)
        fragments.append(fragment.strip())
        item_spans.append(match.span())

    remainder_parts: list[str] = []
    cursor = 0
    for start, end in item_spans:
        remainder_parts.append(text[cursor:start])
        cursor = end
    remainder_parts.append(text[cursor:])
    record = _extract_fields(" ".join(remainder_parts), RECORD_FIELDS)
    return record, items, fragments


def _heuristic_lines(text: str) -> tuple[list[dict[str, Any]], list[str]]:
    items: list[dict[str, Any]] = []
    fragments: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or NON_ITEM_LINE_RE.search(stripped):
            continue
        match = LINE_ITEM_RE.match(stripped)
        if not match:
            continue
        item: dict[str, Any] = {"description": match.group("desc").strip(), "amount": match.group("amount")}
        if match.group("qty"):
            item["quantity"] = match.group("qty")
        items.append(item)
        fragments.append(stripped)
    return items, fragments


def _parse_heuristic(span: JsonSpan, config: PipelineConfig) -> StrategyResult:
    record, items, fragments = _heuristic_key_values(span.text)
    mode = "key/value"
    if not items:
        items, fragments = _heuristic_lines(span.text)
        mode = "receipt line"
    if not items:
        return None, [_note("Heuristic extraction found no line items", fragment=span.text[:120] or None)]

    payload = dict(record)
    payload["items"] = items
    logger.info("parse_heuristic_success | mode=%s | items=%s | record_fields=%s", mode, len(items), sorted(record))
    return (
        ParsedReceipt(payload=payload, layer=ParseLayer.HEURISTIC, item_fragments=tuple(fragments)),
        [
            _note(
                f"Recovered {len(items)} item(s) by {mode} pattern matching; fields may be incomplete",
                severity=Severity.WARNING,
                kind=DiagnosticKind.HEURISTIC_RECOVERY,
            )
        ],
    )


STRATEGIES: tuple[tuple[ParseLayer, Strategy], ...] = (
    (ParseLayer.STRICT, _parse_strict),
    (ParseLayer.REPAIR, _parse_repaired),
    (ParseLayer.HEURISTIC, _parse_heuristic),
)


def _layer_enabled(layer: ParseLayer, config: PipelineConfig) -> bool:
    if layer == ParseLayer.REPAIR:
        return config.repair_enabled
    if layer == ParseLayer.HEURISTIC:
        return config.heuristic_enabled
    return True


def parse_span(span: JsonSpan, config: Optional[PipelineConfig] = None) -> ParseOutcome:
    """Run the enabled strategies in order; first success wins."""
    config = config or DEFAULT_CONFIG
    diagnostics: list[ExtractionDiagnostic] = []
    attempted: list[ParseLayer] = []

    for layer, strategy in STRATEGIES:
        if not _layer_enabled(layer, config):
            continue
        attempted.append(layer)
        try:
            parsed, notes = strategy(span, config)
        except Exception as exc:
            logger.error(
                "parse_layer_error | layer=%s | error_type=%s | error=%s",
                layer.value,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            diagnostics.append(_note(f"{layer.value} layer raised {type(exc).__name__}: {exc}"))
            continue

        diagnostics.extend(notes)
        if parsed is not None:
            logger.debug("parse_complete | layer=%s | attempted=%s", layer.value, [a.value for a in attempted])
            return ParseOutcome(parsed=parsed, diagnostics=diagnostics, attempted=tuple(attempted))
        logger.debug("parse_layer_failed | layer=%s", layer.value)

    diagnostics.append(
        _note(
            "No parse layer could recover structured data ("
            + ", ".join(layer.value for layer in attempted)
            + " attempted)",
            severity=Severity.ERROR,
            fragment=span.text[:120] or None,
        )
    )
    logger.warning("parse_failed | attempted=%s | chars=%s", [a.value for a in attempted], len(span.text))
    return ParseOutcome(parsed=None, diagnostics=diagnostics, attempted=tuple(attempted))
