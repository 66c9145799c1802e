"""
extract.py - Pipeline Orchestrator.

This module turns the raw text a language model returned for a photographed
receipt into a `ReceiptExtractionResult`.

Pipeline role:
    raw text -> sanitize -> locate -> parse -> validate -> categorize -> result

- Each stage returns its output plus the diagnostics it produced; this module
  only sequences them and accumulates the notes.
- The network call that produced the text is not made here. Whatever the
  caller fetched is passed in verbatim and kept on the result.

Error philosophy:
    `extract_receipt` NEVER raises. Expected problems (no JSON, truncation,
    bad fields, no items) come back as diagnostics on the result. Anything
    unexpected is logged with a traceback and converted into a "failed"
    result carrying every diagnostic gathered so far plus the raw text.
"""

from __future__ import annotations

from typing import Optional

from boundary import locate_json_span
from categorize import categorize_items
from config import DEFAULT_CONFIG, PipelineConfig
from logging_config import get_logger
from models import (
    DiagnosticKind,
    ExtractionDiagnostic,
    ExtractionStatus,
    ParseLayer,
    PipelineStage,
    ReceiptExtractionResult,
    Severity,
)
from normalize import validate_receipt
from parse import parse_span
from sanitize import sanitize_response

logger = get_logger(__name__)


def derive_status(diagnostics: list[ExtractionDiagnostic], has_record: bool) -> ExtractionStatus:
    """failed without a record, degraded with any warning, ok otherwise."""
    if not has_record or any(d.severity == Severity.ERROR for d in diagnostics):
        return ExtractionStatus.FAILED
    if any(d.severity == Severity.WARNING for d in diagnostics):
        return ExtractionStatus.DEGRADED
    return ExtractionStatus.OK


def _failed(
    raw_response: str,
    diagnostics: list[ExtractionDiagnostic],
    parse_layer: Optional[ParseLayer] = None,
) -> ReceiptExtractionResult:
    return ReceiptExtractionResult(
        status=ExtractionStatus.FAILED,
        record=None,
        diagnostics=diagnostics,
        raw_response=raw_response,
        parse_layer=parse_layer,
    )


def extract_receipt(
    raw_response: Optional[str],
    config: Optional[PipelineConfig] = None,
) -> ReceiptExtractionResult:
    """Extract a structured receipt from an upstream model response.

    Args:
        raw_response: The verbatim text response. None is treated as "".
        config: Pipeline settings; DEFAULT_CONFIG when omitted.

    Returns:
        ReceiptExtractionResult with status "ok", "degraded" or "failed".
        A failed result has no record; its diagnostics end with the ERROR
        that stopped the run, and `raw_response` holds the original text.

    Examples:
        >>> result = extract_receipt('{"items":[{"description":"Hay","unitPrice":12}]}')
        >>> result.status.value, result.record.items[0].category
        ('ok', 'feed_supplies')
    """
    config = config or DEFAULT_CONFIG
    raw_text = raw_response if isinstance(raw_response, str) else ("" if raw_response is None else str(raw_response))
    diagnostics: list[ExtractionDiagnostic] = []
    stage = PipelineStage.SANITIZE
    parse_layer: Optional[ParseLayer] = None

    logger.info(
        "extract_start | chars=%s | strict_mode=%s | max_repair_attempts=%s",
        len(raw_text),
        config.strict_mode,
        config.max_repair_attempts,
    )

    try:
        sanitized = sanitize_response(raw_text)
        diagnostics.extend(sanitized.diagnostics)

        stage = PipelineStage.LOCATE
        span, notes = locate_json_span(sanitized)
        diagnostics.extend(notes)

        stage = PipelineStage.PARSE
        outcome = parse_span(span, config)
        diagnostics.extend(outcome.diagnostics)
        if outcome.parsed is None:
            logger.warning(
                "extract_failed | stage=parse | attempted=%s | notes=%s",
                [layer.value for layer in outcome.attempted],
                len(diagnostics),
            )
            return _failed(raw_text, diagnostics)
        parse_layer = outcome.parsed.layer

        stage = PipelineStage.VALIDATE
        record, notes = validate_receipt(outcome.parsed)
        diagnostics.extend(notes)
        if record is None:
            logger.warning("extract_failed | stage=validate | layer=%s | notes=%s", parse_layer.value, len(diagnostics))
            return _failed(raw_text, diagnostics, parse_layer)

        stage = PipelineStage.CATEGORIZE
        record, notes = categorize_items(record, config)
        diagnostics.extend(notes)

        status = derive_status(diagnostics, has_record=True)
        logger.info(
            "extract_complete | status=%s | layer=%s | vendor=%r | items=%s | items_total=%s | warnings=%s",
            status.value,
            parse_layer.value,
            record.vendor,
            len(record.items),
            record.items_total,
            sum(1 for d in diagnostics if d.severity == Severity.WARNING),
        )

    except Exception as exc:
        logger.error(
            "extract_failure | stage=%s | error_type=%s | error=%s",
            stage.value,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        diagnostics.append(
            ExtractionDiagnostic.create(
                stage,
                DiagnosticKind.INTERNAL_ERROR,
                f"Unexpected {type(exc).__name__} during {stage.value}: {exc}",
                severity=Severity.ERROR,
            )
        )
        return _failed(raw_text, diagnostics, parse_layer)

    return ReceiptExtractionResult(
        status=status,
        record=record,
        diagnostics=diagnostics,
        raw_response=raw_text,
        parse_layer=parse_layer,
    )
