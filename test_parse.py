"""
test_parse.py - Layered Parser Tests

Validates:
- strict parse of valid JSON
- light repair (trailing commas, truncation, dangling keys)
- repair candidates bounded by max_repair_attempts
- heuristic recovery from broken JSON and from plain receipt lines
- strict mode disabling the lenient layers

Usage: pytest test_parse.py
"""

from __future__ import annotations

import json
import os
import sys

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from boundary import locate_json_span
from config import PipelineConfig
from models import DiagnosticKind, ParseLayer, Severity
from parse import parse_span, repair_json_text, strip_trailing_commas
from sanitize import sanitize_response


def _parse(text: str, config: PipelineConfig | None = None):
    span, _ = locate_json_span(sanitize_response(text))
    return parse_span(span, config)


def test_valid_json_uses_strict_layer():
    outcome = _parse('{"items": [{"description": "Hay"}]}')

    assert outcome.succeeded
    assert outcome.parsed.layer == ParseLayer.STRICT
    assert outcome.parsed.payload == {"items": [{"description": "Hay"}]}
    assert outcome.attempted == (ParseLayer.STRICT,)
    assert outcome.diagnostics == []


def test_trailing_commas_are_repaired():
    outcome = _parse('{"items": [{"description": "Hay", "quantity": 2,},]}')

    assert outcome.parsed.layer == ParseLayer.REPAIR
    assert outcome.parsed.payload["items"] == [{"description": "Hay", "quantity": 2}]
    repaired = [d for d in outcome.diagnostics if d.kind == DiagnosticKind.REPAIR_APPLIED]
    assert len(repaired) == 1
    assert repaired[0].severity == Severity.WARNING
    assert "trailing commas" in repaired[0].message


def test_missing_closers_recover_all_complete_items():
    text = (
        '{"vendor":"Co-op","items":['
        '{"description":"Hay","unitPrice":12},'
        '{"description":"Oats","unitPrice":8},'
        '{"description":"Salt Block","unitPrice":6}'
    )

    outcome = _parse(text)

    assert outcome.parsed.layer == ParseLayer.REPAIR
    descriptions = [item["description"] for item in outcome.parsed.payload["items"]]
    assert descriptions == ["Hay", "Oats", "Salt Block"]


def test_truncation_inside_a_string_keeps_earlier_items():
    text = (
        '{"items":[{"description":"Hay","unitPrice":12},'
        '{"description":"Oats","unitPrice":8},{"description":"Salt Bl'
    )

    outcome = _parse(text)

    items = outcome.parsed.payload["items"]
    assert [item["description"] for item in items[:2]] == ["Hay", "Oats"]


def test_dangling_key_is_dropped():
    repaired, fixes = repair_json_text('{"items": [{"description": "Hay"}], "total":')

    assert json.loads(repaired) == {"items": [{"description": "Hay"}]}
    assert "dropped incomplete trailing member" in fixes


def test_dangling_comma_and_partial_number():
    repaired, _ = repair_json_text('{"a": [1, 2,')
    assert json.loads(repaired) == {"a": [1, 2]}

    repaired, _ = repair_json_text('{"price": 24.')
    assert json.loads(repaired) == {"price": 24}


def test_partial_literal_becomes_null():
    repaired, _ = repair_json_text('{"taxable": tru')

    assert json.loads(repaired) == {"taxable": None}


def test_strip_trailing_commas_leaves_strings_alone():
    assert strip_trailing_commas('{"a": "x,}", "b": [1,],}') == '{"a": "x,}", "b": [1]}'


def test_second_repair_candidate_needs_a_second_attempt():
    text = (
        '{"items":[{"description":"Hay","unitPrice":12},'
        '{"description":"Oats","unitPrice":8.5x'
    )

    one = _parse(text, PipelineConfig(max_repair_attempts=1))
    two = _parse(text, PipelineConfig(max_repair_attempts=2))

    assert one.parsed.layer == ParseLayer.HEURISTIC
    assert two.parsed.layer == ParseLayer.REPAIR
    assert two.parsed.payload == {"items": [{"description": "Hay", "unitPrice": 12}]}
    assert any("last complete value" in d.message for d in two.diagnostics)


def test_zero_repair_attempts_skips_the_repair_layer():
    outcome = _parse('{"items": [{"description": "Hay",}]}', PipelineConfig(max_repair_attempts=0))

    assert ParseLayer.REPAIR not in outcome.attempted
    assert outcome.parsed.layer == ParseLayer.HEURISTIC


def test_heuristic_recovers_fields_from_broken_json():
    text = (
        '{"vendor": "Feed Barn", "items": ['
        '{"description": "Sweet Feed 50lb" "unitPrice": 14.99}, '
        '{"description": "Fly Spray", "unitPrice": "$9.50"}]}'
    )

    outcome = _parse(text)

    parsed = outcome.parsed
    assert parsed.layer == ParseLayer.HEURISTIC
    assert parsed.payload["vendor"] == "Feed Barn"
    assert parsed.payload["items"] == [
        {"description": "Sweet Feed 50lb", "unitPrice": "14.99"},
        {"description": "Fly Spray", "unitPrice": "$9.50"},
    ]
    assert len(parsed.item_fragments) == 2
    assert parsed.item_fragments[1].startswith('{"description": "Fly Spray"')
    kinds = [d.kind for d in outcome.diagnostics]
    assert DiagnosticKind.HEURISTIC_RECOVERY in kinds


def test_heuristic_keeps_subcategory_separate_from_category():
    outcome = _parse(
        '{"items": [{"description": "Timothy Hay" "subcategory": "hay", "category": "feed", "unitPrice": 11}]}'
    )

    assert outcome.parsed.layer == ParseLayer.HEURISTIC
    item = outcome.parsed.payload["items"][0]
    assert item["subcategory"] == "hay"
    assert item["category"] == "feed"


def test_heuristic_reads_plain_receipt_lines():
    text = (
        "Sorry, I can't produce JSON for this one.\n"
        "TRACTOR SUPPLY CO\n"
        "2 Horse Treats 5.98\n"
        "Baling Twine $19.99\n"
        "SUBTOTAL 25.97\n"
        "TOTAL 27.53\n"
    )

    outcome = _parse(text)

    assert outcome.parsed.layer == ParseLayer.HEURISTIC
    assert outcome.parsed.payload["items"] == [
        {"description": "Horse Treats", "amount": "5.98", "quantity": "2"},
        {"description": "Baling Twine", "amount": "19.99"},
    ]
    assert outcome.parsed.item_fragments == ("2 Horse Treats 5.98", "Baling Twine $19.99")


def test_strict_mode_disables_lenient_layers():
    outcome = _parse('{"items": [{"description": "Hay",}]}', PipelineConfig(strict_mode=True))

    assert not outcome.succeeded
    assert outcome.attempted == (ParseLayer.STRICT,)
    assert outcome.diagnostics[-1].kind == DiagnosticKind.PARSE_FAILURE
    assert outcome.diagnostics[-1].severity == Severity.ERROR


def test_all_layers_failing_is_reported_once_as_error():
    outcome = _parse("The photo is too dark to read anything.")

    assert not outcome.succeeded
    errors = [d for d in outcome.diagnostics if d.severity == Severity.ERROR]
    assert len(errors) == 1
    assert "strict, repair, heuristic" in errors[0].message


def test_scalar_json_is_not_a_receipt():
    outcome = _parse("42", PipelineConfig(strict_mode=True))

    assert not outcome.succeeded
