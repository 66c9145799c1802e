"""
models.py - Data Models for the Receipt Extraction Pipeline

This file defines the public data structures produced by the pipeline.
Stage-internal values (SanitizedText, JsonSpan, ParsedReceipt) live next to
the stage that creates them; everything a caller can receive lives here:

    sanitize.py  ->  SanitizedText        (+ diagnostics)
    boundary.py  ->  JsonSpan             (+ diagnostics)
    parse.py     ->  ParsedReceipt        (+ diagnostics)
    normalize.py ->  ReceiptRecord        (+ diagnostics)
    categorize.py -> ReceiptRecord        (+ diagnostics)
    extract.py   ->  ReceiptExtractionResult

Design principles:
1. Every degraded decision leaves an ExtractionDiagnostic behind; nothing is
   discarded silently.
2. Money and quantities are Decimal internally and JSON numbers on the wire.
3. Serialized keys are camelCase (`unitPrice`, `rawFragment`, `rawResponse`)
   because the consumer is a mobile client; Python attribute names stay
   snake_case and both spellings are accepted on input.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, computed_field
from pydantic.alias_generators import to_camel


def _decimal_to_float(value: Decimal) -> float:
    return float(value)


# Decimal in Python, plain number in JSON output.
JsonDecimal = Annotated[Decimal, PlainSerializer(_decimal_to_float, return_type=float, when_used="json")]

CENT = Decimal("0.01")

# Largest quantity, price or weight accepted from a response. Products of two
# such values still quantize to cents within the default 28-digit context.
MAX_AMOUNT = Decimal("1e12")


class Category(str, Enum):
    """Built-in expense categories for agricultural receipts."""

    FEED_SUPPLIES = "feed_supplies"
    VETERINARY_HEALTH = "veterinary_health"
    # Grooming, bedding and cleaning consumables.
    SUPPLIES = "supplies"
    EQUIPMENT = "equipment"
    # Fallback when no rule matched; surfaced for manual review.
    UNCATEGORIZED = "uncategorized_supplies"


DEFAULT_TAXONOMY: tuple[str, ...] = tuple(category.value for category in Category)


class CategorySource(str, Enum):
    """Where a line item's category came from."""

    UPSTREAM = "upstream"
    OVERRIDE = "override"
    RULE = "rule"
    DEFAULT = "default"


class PipelineStage(str, Enum):
    SANITIZE = "sanitize"
    LOCATE = "locate"
    PARSE = "parse"
    VALIDATE = "validate"
    CATEGORIZE = "categorize"
    PIPELINE = "pipeline"


class ParseLayer(str, Enum):
    """Which parsing strategy produced the payload."""

    STRICT = "strict"
    REPAIR = "repair"
    HEURISTIC = "heuristic"


class Severity(str, Enum):
    # Informational: the record is exactly what the text said.
    INFO = "info"
    # Partial uncertainty: the record is usable but should be reviewed.
    WARNING = "warning"
    # Terminal for the invocation.
    ERROR = "error"


class DiagnosticKind(str, Enum):
    FENCES_REMOVED = "fences_removed"
    WRAPPER_REMOVED = "wrapper_removed"
    NO_STRUCTURE_FOUND = "no_structure_found"
    TRUNCATED_INPUT = "truncated_input"
    REPAIR_APPLIED = "repair_applied"
    HEURISTIC_RECOVERY = "heuristic_recovery"
    PARSE_FAILURE = "parse_failure"
    FIELD_COERCION_ERROR = "field_coercion_error"
    PRICE_UNKNOWN = "price_unknown"
    LINE_TOTAL_MISMATCH = "line_total_mismatch"
    TOTAL_MISMATCH = "total_mismatch"
    EMPTY_RESULT = "empty_result"
    UPSTREAM_CATEGORY_REJECTED = "upstream_category_rejected"
    UNKNOWN_CATEGORY = "unknown_category"
    MISSING_FEED_WEIGHT = "missing_feed_weight"
    INTERNAL_ERROR = "internal_error"


class ExtractionStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


MAX_FRAGMENT_CHARS = 240


class ExtractionDiagnostic(_WireModel):
    """One note explaining a degraded or failed decision.

    Diagnostics are the audit trail of an extraction. A status of "degraded"
    is derived from them (any WARNING), and a "failed" result carries the
    ERROR that ended the run together with everything gathered before it.
    """

    stage: PipelineStage = Field(..., description="Pipeline stage that emitted the note.")
    kind: DiagnosticKind = Field(..., description="Machine-readable reason code.")
    severity: Severity = Field(default=Severity.INFO)
    message: str = Field(..., description="Human-readable reason.")
    fragment: Optional[str] = Field(
        default=None,
        description=(
            "The piece of upstream text that triggered the note, truncated "
            "for display. None when the note concerns the response as a whole."
        ),
    )
    item_index: Optional[int] = Field(
        default=None,
        ge=0,
        description="Zero-based index of the source line item the note refers to.",
    )

    @classmethod
    def create(
        cls,
        stage: PipelineStage,
        kind: DiagnosticKind,
        message: str,
        severity: Severity = Severity.INFO,
        fragment: object = None,
        item_index: Optional[int] = None,
    ) -> "ExtractionDiagnostic":
        """Build a diagnostic, clipping the fragment to a displayable size."""
        text = None
        if fragment is not None:
            text = str(fragment)
            if len(text) > MAX_FRAGMENT_CHARS:
                text = text[: MAX_FRAGMENT_CHARS - 3] + "..."
        return cls(
            stage=stage,
            kind=kind,
            severity=severity,
            message=message,
            fragment=text,
            item_index=item_index,
        )


class LineItem(_WireModel):
    """One purchased item, validated and normalized.

    Order of items in a ReceiptRecord mirrors the physical receipt. The
    upstream-supplied line total is kept separately from the recomputed
    `line_total` so that the two can be compared.
    """

    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1)
    quantity: JsonDecimal = Field(default=Decimal("1"), gt=0)
    unit_price: JsonDecimal = Field(
        default=Decimal("0"),
        ge=0,
        description=(
            "Price per unit. 0 together with price_known=False means the "
            "response did not say; it is never an assertion that the item was free."
        ),
    )
    price_known: bool = Field(default=True)
    category: str = Field(default=Category.UNCATEGORIZED.value)
    category_source: Optional[CategorySource] = Field(default=None)
    subcategory: Optional[str] = Field(
        default=None,
        description='Finer grouping within the category ("hay", "vaccinations"); None when nothing matched.',
    )
    reported_category: Optional[str] = Field(
        default=None,
        description="Category string exactly as the upstream response gave it.",
    )
    reported_subcategory: Optional[str] = Field(default=None)
    reported_line_total: Optional[JsonDecimal] = Field(
        default=None,
        description="Extended price as reported upstream, if any.",
    )
    unit_of_measure: Optional[str] = Field(default=None)
    feed_weight_lbs: Optional[JsonDecimal] = Field(
        default=None,
        ge=0,
        description="Weight in pounds for feed items (reported or read from the description).",
    )
    raw_fragment: str = Field(
        default="",
        description="Source text the item was built from, for debugging and audit.",
    )

    @computed_field(alias="lineTotal")  # type: ignore[prop-decorator]
    @property
    def line_total(self) -> JsonDecimal:
        """quantity x unit_price, rounded to cents."""
        return (self.quantity * self.unit_price).quantize(CENT)

    @property
    def has_line_total_discrepancy(self) -> bool:
        """Whether the upstream line total disagrees with quantity x unit_price."""
        if self.reported_line_total is None or not self.price_known:
            return False
        return abs(self.line_total - self.reported_line_total) > CENT

    @property
    def needs_review(self) -> bool:
        return (
            not self.price_known
            or self.category == Category.UNCATEGORIZED.value
            or self.has_line_total_discrepancy
        )


class ReceiptRecord(_WireModel):
    """Validated purchase record built from one upstream response."""

    vendor: Optional[str] = Field(default=None)
    date: Optional[dt.date] = Field(default=None, description="Purchase date, ISO-8601 on the wire.")
    receipt_number: Optional[str] = Field(default=None)
    items: list[LineItem] = Field(..., min_length=1)
    tax: Optional[JsonDecimal] = Field(default=None, ge=0)
    total: Optional[JsonDecimal] = Field(
        default=None,
        ge=0,
        description="Total as reported upstream. See items_total for the computed sum.",
    )

    @computed_field(alias="itemsTotal")  # type: ignore[prop-decorator]
    @property
    def items_total(self) -> JsonDecimal:
        """Sum of recomputed line totals."""
        return sum((item.line_total for item in self.items), Decimal("0")).quantize(CENT)

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "vendor": "Tractor Supply",
                    "date": "2024-09-08",
                    "items": [
                        {
                            "description": "50lb Dog Food",
                            "quantity": 2,
                            "unitPrice": 24.99,
                            "category": "feed_supplies",
                            "rawFragment": '{"description":"50lb Dog Food","quantity":2,"unitPrice":24.99}',
                        }
                    ],
                    "total": 49.98,
                }
            ]
        },
    )


class ReceiptExtractionResult(_WireModel):
    """Final output of one pipeline invocation.

    Either a ReceiptRecord with zero or more non-fatal diagnostics
    (status "ok" or "degraded"), or a terminal failure (status "failed")
    carrying every diagnostic gathered up to the failing stage. The raw
    upstream text is always attached so a human can see what went wrong.
    """

    status: ExtractionStatus
    record: Optional[ReceiptRecord] = Field(default=None)
    diagnostics: list[ExtractionDiagnostic] = Field(default_factory=list)
    raw_response: str = Field(default="")
    parse_layer: Optional[ParseLayer] = Field(
        default=None,
        description="Parsing strategy that produced the record; None when parsing never succeeded.",
    )

    @property
    def is_usable(self) -> bool:
        return self.status != ExtractionStatus.FAILED and self.record is not None

    @property
    def warnings(self) -> list[ExtractionDiagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    @property
    def failed_stage(self) -> Optional[PipelineStage]:
        """Stage of the first ERROR diagnostic, if the run failed."""
        for diagnostic in self.diagnostics:
            if diagnostic.severity == Severity.ERROR:
                return diagnostic.stage
        return None

    def diagnostics_of(self, kind: DiagnosticKind) -> list[ExtractionDiagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]
