"""
main.py - CLI for the receipt extraction pipeline.

Single response:
    python main.py --input response.txt [--json] [--strict]
    cat response.txt | python main.py

Batch mode (CSV with a raw_response column, optional receipt_id):
    python main.py --batch responses.csv --output results.csv --workers 4
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import pandas as pd

from config import PipelineConfig, load_config
from explain import build_summary, format_result, format_result_json
from extract import extract_receipt
from logging_config import get_logger, setup_logging
from models import ExtractionStatus, ReceiptExtractionResult, Severity

logger = get_logger("receipt-extract")

REQUIRED_COLUMNS = ["raw_response"]
OPTIONAL_COLUMNS = ["receipt_id"]
DEFAULT_WORKERS = 4


def _configure_output_symbols() -> tuple[str, str]:
    """Configure stdout encoding and return safe line/fail symbols."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError, OSError):
        pass

    try:
        "═✗".encode(sys.stdout.encoding or "utf-8")
        return "═", "✗"
    except (UnicodeEncodeError, LookupError):
        return "=", "X"


BOX_CHAR, FAIL_CHAR = _configure_output_symbols()


def read_response(input_path: Optional[str]) -> str:
    """Read one raw response from a file, or from stdin when no path is given."""
    if input_path is None or str(input_path).strip() in ("", "-"):
        return sys.stdin.read()

    path = Path(str(input_path).strip())
    if not path.exists():
        raise FileNotFoundError(f"Response file not found: {input_path}\nProvide a valid path with --input")
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning("input_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1", path)
        return path.read_text(encoding="latin-1")


def load_responses(csv_path: str) -> pd.DataFrame:
    """Load and validate a batch CSV of raw responses."""
    if csv_path is None:
        raise ValueError("csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError("csv_path cannot be empty")

    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"Responses CSV not found: {csv_path}\nProvide a valid CSV path with --batch")

    read_options = {"dtype": str, "keep_default_na": False}
    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", **read_options)
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            csv_path,
        )
        df = pd.read_csv(csv_path, encoding="latin-1", **read_options)
    except Exception as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    df.columns = [str(col).strip().lower() for col in df.columns]

    missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(
            f"Responses CSV missing required columns: {missing}\n"
            f"Required: {REQUIRED_COLUMNS}\n"
            f"Found: {list(df.columns)}"
        )
    if df.empty:
        raise ValueError(f"Responses CSV is empty: {csv_path}")

    if "receipt_id" not in df.columns:
        df["receipt_id"] = [str(index) for index in range(1, len(df) + 1)]
    df["receipt_id"] = df["receipt_id"].astype(str).str.strip()

    logger.info("csv_loaded | path=%s | rows=%s | columns=%s", csv_path, len(df), list(df.columns))
    return df


def _result_row(receipt_id: str, result: ReceiptExtractionResult) -> dict:
    record = result.record
    summary = build_summary(record) if record is not None else None
    return {
        "receipt_id": receipt_id,
        "status": result.status.value,
        "parse_layer": result.parse_layer.value if result.parse_layer else "",
        "vendor": (record.vendor or "") if record else "",
        "date": record.date.isoformat() if record and record.date else "",
        "item_count": len(record.items) if record else 0,
        "items_total": float(record.items_total) if record else 0.0,
        "total": float(record.total) if record and record.total is not None else None,
        "warnings": sum(1 for d in result.diagnostics if d.severity == Severity.WARNING),
        "errors": "; ".join(d.message for d in result.diagnostics if d.severity == Severity.ERROR),
        "category_totals": json.dumps(summary["categoryTotals"]) if summary else "{}",
        "needs_review": summary["itemsNeedingReview"] if summary else 0,
    }


def run_batch(
    responses_df: pd.DataFrame,
    config: Optional[PipelineConfig] = None,
    workers: int = DEFAULT_WORKERS,
) -> pd.DataFrame:
    """Extract every row of the responses frame in a thread pool, keeping row order."""
    rows = list(zip(responses_df["receipt_id"], responses_df["raw_response"]))
    workers = max(1, int(workers))
    batch_start = time.time()
    logger.info("batch_start | rows=%s | workers=%s", len(rows), workers)

    def run_one(row: tuple[str, str]) -> dict:
        receipt_id, raw_response = row
        result = extract_receipt(raw_response, config)
        logger.info(
            "batch_receipt_complete | receipt_id=%s | status=%s | layer=%s",
            receipt_id,
            result.status.value,
            result.parse_layer.value if result.parse_layer else None,
        )
        return _result_row(receipt_id, result)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(run_one, rows))

    results_df = pd.DataFrame(results)
    counts = results_df["status"].value_counts().to_dict() if not results_df.empty else {}
    logger.info(
        "batch_complete | ok=%s | degraded=%s | failed=%s | duration_s=%.2f",
        counts.get(ExtractionStatus.OK.value, 0),
        counts.get(ExtractionStatus.DEGRADED.value, 0),
        counts.get(ExtractionStatus.FAILED.value, 0),
        time.time() - batch_start,
    )
    return results_df


def _print_summary_table(results_df: pd.DataFrame) -> None:
    """Print a formatted summary table for batch mode results."""
    print(f"\n{BOX_CHAR * 60}")
    print(f"  SUMMARY - {len(results_df)} response(s) processed")
    print(f"{BOX_CHAR * 60}")
    print()
    print(f"  {'Receipt':<20} {'Status':<10} {'Vendor':<18} {'Items':>5}")
    print(f"  {'─' * 20} {'─' * 10} {'─' * 18} {'─' * 5}")

    for row in results_df.itertuples(index=False):
        short_id = row.receipt_id[:18] + ".." if len(row.receipt_id) > 20 else row.receipt_id
        vendor = row.vendor or "-"
        short_vendor = vendor[:16] + ".." if len(vendor) > 18 else vendor
        mark = f"{FAIL_CHAR} " if row.status == ExtractionStatus.FAILED.value else ""
        print(f"  {short_id:<20} {mark + row.status:<10} {short_vendor:<18} {row.item_count:>5}")

    print()
    print(f"{BOX_CHAR * 60}")


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Environment config with CLI flags applied on top."""
    base = load_config()
    values = base.model_dump()
    if args.strict:
        values["strict_mode"] = True
    if args.max_repair_attempts is not None:
        values["max_repair_attempts"] = args.max_repair_attempts
    return PipelineConfig(**values)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="receipt-extract",
        description=(
            "Receipt Response Extraction\n"
            "Turns a language-model response describing a receipt into "
            "validated, categorized line items."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --input response.txt\n"
            "  %(prog)s --input response.txt --json --strict\n"
            "  %(prog)s --batch responses.csv --output results.csv --workers 8\n"
        ),
    )
    parser.add_argument("--input", "-i", type=str, help="Path to a raw response text file (default: stdin)")
    parser.add_argument("--batch", "-b", type=str, help="CSV with a raw_response column (optional receipt_id)")
    parser.add_argument("--output", "-o", type=str, help="Write batch results to this CSV file")
    parser.add_argument(
        "--workers",
        "-w",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Worker threads for batch mode (default: {DEFAULT_WORKERS})",
    )
    parser.add_argument("--strict", action="store_true", help="Only accept strictly valid JSON (no repair/heuristics)")
    parser.add_argument("--max-repair-attempts", type=int, default=None, help="Repair candidates to try (0-10)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON instead of formatted text (single response mode)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for receipt extraction."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else None,
        json_format=args.log_json,
    )

    if args.batch and args.input:
        parser.error("Use --input OR --batch, not both")
    if args.output and not args.batch:
        parser.error("--output is only valid with --batch")

    try:
        config = build_config(args)

        if args.batch:
            logger.info("cli_mode | mode=batch | csv=%s | workers=%s", args.batch, args.workers)
            results_df = run_batch(load_responses(args.batch), config, workers=args.workers)
            _print_summary_table(results_df)
            if args.output:
                results_df.to_csv(args.output, index=False)
                logger.info("batch_output_written | path=%s | rows=%s", args.output, len(results_df))
            return

        logger.info("cli_mode | mode=single | input=%s", args.input or "stdin")
        result = extract_receipt(read_response(args.input), config)
        if args.json:
            print(json.dumps(format_result_json(result), indent=2))
        else:
            print(format_result(result))
        if result.status == ExtractionStatus.FAILED:
            raise SystemExit(1)
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
