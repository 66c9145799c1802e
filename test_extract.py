"""
test_extract.py - Pipeline Orchestrator Tests

End-to-end checks of extract_receipt():
- the Tractor Supply example response
- idempotence, markdown invariance, prose tolerance
- braces inside string literals
- truncation recovery
- empty-result and unparseable responses
- unexpected internal errors becoming failed results

Usage: pytest test_extract.py
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import extract
from config import PipelineConfig
from extract import extract_receipt
from models import (
    DiagnosticKind,
    ExtractionStatus,
    ParseLayer,
    PipelineStage,
    Severity,
)

PAYLOAD = (
    '{"vendor":"Tractor Supply","items":['
    '{"description":"50lb Dog Food","quantity":2,"unitPrice":24.99},'
    '{"description":"Cattle Dewormer"}]}'
)
TRACTOR_SUPPLY_RESPONSE = "Here is the receipt data:\n```json\n" + PAYLOAD + "\n```\nThanks!"


def test_tractor_supply_example():
    result = extract_receipt(TRACTOR_SUPPLY_RESPONSE)

    assert result.status == ExtractionStatus.OK
    assert result.parse_layer == ParseLayer.STRICT
    record = result.record
    assert record.vendor == "Tractor Supply"
    assert len(record.items) == 2

    food, dewormer = record.items
    assert food.category == "feed_supplies"
    assert food.quantity == Decimal("2")
    assert food.unit_price == Decimal("24.99")
    assert food.feed_weight_lbs == Decimal("50.00")
    assert food.subcategory == "pet_food"
    assert dewormer.category == "veterinary_health"
    assert dewormer.subcategory == "dewormers"
    assert dewormer.quantity == Decimal("1")
    assert dewormer.unit_price == Decimal("0")

    unknown = result.diagnostics_of(DiagnosticKind.PRICE_UNKNOWN)
    assert len(unknown) == 1
    assert unknown[0].item_index == 1
    assert result.raw_response == TRACTOR_SUPPLY_RESPONSE


def test_idempotence():
    first = extract_receipt(TRACTOR_SUPPLY_RESPONSE)
    second = extract_receipt(TRACTOR_SUPPLY_RESPONSE)

    assert first.model_dump() == second.model_dump()


def test_markdown_invariance():
    fenced = extract_receipt("```json\n" + PAYLOAD + "\n```")
    bare = extract_receipt(PAYLOAD)

    assert fenced.record == bare.record


def test_prose_tolerance():
    wrapped = extract_receipt(
        "I looked at the photo carefully.\n" + PAYLOAD + "\nLet me know if you need anything {else}!"
    )

    assert wrapped.record == extract_receipt(PAYLOAD).record


def test_bracketed_lead_in_prose_is_tolerated():
    result = extract_receipt('Receipt [photo 1] read below.\n{"items":[{"description":"Hay","unitPrice":12}]}')

    assert result.status == ExtractionStatus.OK
    assert result.parse_layer == ParseLayer.STRICT
    assert result.record.items[0].description == "Hay"


def test_braces_inside_descriptions_do_not_break_extraction():
    result = extract_receipt(
        '{"items":[{"description":"Bucket {blue} [large]","unitPrice":5}]} trailing } text'
    )

    assert result.status == ExtractionStatus.OK
    assert result.record.items[0].description == "Bucket {blue} [large]"
    assert result.record.items[0].category == "equipment"


def test_truncation_recovers_complete_items():
    truncated = (
        '{"vendor":"Co-op","items":['
        '{"description":"Alfalfa Hay","quantity":3,"unitPrice":12.5},'
        '{"description":"Horse Shampoo","unitPrice":8},'
        '{"description":"Water Bucket","unitPrice":9.99}'
    )

    result = extract_receipt(truncated)

    assert result.status == ExtractionStatus.DEGRADED
    assert result.parse_layer == ParseLayer.REPAIR
    assert len(result.record.items) >= 2
    assert [item.description for item in result.record.items[:2]] == ["Alfalfa Hay", "Horse Shampoo"]
    assert result.diagnostics_of(DiagnosticKind.TRUNCATED_INPUT)
    assert result.diagnostics_of(DiagnosticKind.REPAIR_APPLIED)


def test_empty_items_is_a_failure_not_ok():
    raw = '{"vendor":"Co-op","items":[]}'

    result = extract_receipt(raw)

    assert result.status == ExtractionStatus.FAILED
    assert result.record is None
    assert result.failed_stage == PipelineStage.VALIDATE
    assert result.diagnostics_of(DiagnosticKind.EMPTY_RESULT)
    assert result.raw_response == raw
    assert not result.is_usable


def test_unreadable_response_fails_in_parse_stage():
    raw = "I'm sorry, the image is too blurry to read."

    result = extract_receipt(raw)

    assert result.status == ExtractionStatus.FAILED
    assert result.failed_stage == PipelineStage.PARSE
    assert result.diagnostics_of(DiagnosticKind.NO_STRUCTURE_FOUND)
    assert result.raw_response == raw


def test_none_input_returns_failed_result():
    result = extract_receipt(None)

    assert result.status == ExtractionStatus.FAILED
    assert result.raw_response == ""


def test_strict_mode_fails_where_default_repairs():
    raw = '{"items":[{"description":"Hay","unitPrice":12},]}'

    assert extract_receipt(raw).status == ExtractionStatus.DEGRADED
    strict = extract_receipt(raw, PipelineConfig(strict_mode=True))
    assert strict.status == ExtractionStatus.FAILED
    assert strict.failed_stage == PipelineStage.PARSE


def test_unknown_category_degrades_the_result():
    result = extract_receipt('{"items":[{"description":"Baling Twine","unitPrice":19.99}]}')

    assert result.status == ExtractionStatus.DEGRADED
    assert [d.kind for d in result.warnings] == [DiagnosticKind.UNKNOWN_CATEGORY]


def test_plain_text_receipt_is_recovered_heuristically():
    raw = "TRACTOR SUPPLY CO\n2 Horse Treats 5.98\nWater Bucket $9.99\nTOTAL 15.97\n"

    result = extract_receipt(raw)

    assert result.status == ExtractionStatus.DEGRADED
    assert result.parse_layer == ParseLayer.HEURISTIC
    treats, bucket = result.record.items
    assert treats.quantity == Decimal("2")
    assert treats.unit_price == Decimal("2.99")
    assert treats.category == "feed_supplies"
    assert bucket.raw_fragment == "Water Bucket $9.99"


def test_internal_error_becomes_failed_result(monkeypatch):
    def broken(record, config):
        raise RuntimeError("rule table exploded")

    monkeypatch.setattr(extract, "categorize_items", broken)

    result = extract_receipt(TRACTOR_SUPPLY_RESPONSE)

    assert result.status == ExtractionStatus.FAILED
    assert result.record is None
    assert result.parse_layer == ParseLayer.STRICT
    error = result.diagnostics[-1]
    assert error.kind == DiagnosticKind.INTERNAL_ERROR
    assert error.stage == PipelineStage.CATEGORIZE
    assert error.severity == Severity.ERROR
    assert "rule table exploded" in error.message
    assert result.raw_response == TRACTOR_SUPPLY_RESPONSE


def test_oversized_amounts_drop_the_item_instead_of_raising():
    raw = (
        '{"items":[{"description":"Hay","quantity":123456789012345678901234567890,"unitPrice":1},'
        '{"description":"Oats","quantity":1,"unitPrice":99999999999999999999999999999},'
        '{"description":"Straw","quantity":0.00000000000000000001,"amount":500},'
        '{"description":"Salt Block","unitPrice":6.49}]}'
    )

    result = extract_receipt(raw)

    assert result.status == ExtractionStatus.DEGRADED
    assert [item.description for item in result.record.items] == ["Salt Block"]
    assert len(result.diagnostics_of(DiagnosticKind.FIELD_COERCION_ERROR)) == 3
    assert result.record.items_total == Decimal("6.49")


def test_only_oversized_items_is_an_empty_result():
    result = extract_receipt('{"items":[{"description":"Hay","quantity":123456789012345678901234567890,"unitPrice":1}]}')

    assert result.status == ExtractionStatus.FAILED
    assert result.diagnostics[-1].kind == DiagnosticKind.EMPTY_RESULT
