"""
boundary.py - Boundary Locator.

Finds the span of the embedded JSON value inside arbitrary surrounding text.

Algorithm: start at the first `{` or `[`, then track open braces and
brackets on a stack while skipping string literals (honouring backslash
escapes). The span ends when the stack empties. Taking "first `{` to last
`}`" instead breaks as soon as trailing prose contains a brace, and ignoring
strings breaks on descriptions such as "Bucket {blue}".

Prose before the payload may hold its own brackets ("see [photo 1]"), so
every top-level value is a candidate. The first one holding item-like keys
wins, then the first holding any JSON member key, then simply the first.

The same scanner is reused by the repair layer (`scan_structure`) to find out
which closers a damaged span is missing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from logging_config import get_logger
from models import DiagnosticKind, ExtractionDiagnostic, PipelineStage, Severity
from sanitize import SanitizedText

logger = get_logger(__name__)

OPENERS = {"{": "}", "[": "]"}
CLOSERS = {"}": "{", "]": "["}

# Candidate values scanned before settling for the best one seen.
MAX_CANDIDATES = 32
VALUE_START_RE = re.compile(r'[{\[]\s*(?:["{\[\]}\d-]|true\b|false\b|null\b)')
MEMBER_KEY_RE = re.compile(r'"(?:[^"\\]|\\.)*"\s*:')
ITEM_KEY_RE = re.compile(
    r'"(?:items|line_?items|description|name|item|item_?name|product|unit_?price|price|quantity|qty|amount)"\s*:',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ScanState:
    """Result of scanning structured text from an opening character.

    end:           index just past the closer that emptied the stack, or None
    open_stack:    unclosed openers, outermost first (empty when end is set)
    in_string:     scan finished inside a string literal
    last_complete: index just past the last closer of a nested value, the end
                   of the longest prefix whose nested values are all balanced
    """

    end: Optional[int]
    open_stack: tuple[str, ...]
    in_string: bool
    last_complete: Optional[int]
    mismatched_closers: int = 0

    @property
    def brace_depth(self) -> int:
        return self.open_stack.count("{")

    @property
    def bracket_depth(self) -> int:
        return self.open_stack.count("[")

    @property
    def balanced(self) -> bool:
        return self.end is not None

    def missing_closers(self) -> str:
        """Closing characters that would balance the scanned text, innermost first."""
        return "".join(OPENERS[opener] for opener in reversed(self.open_stack))


def scan_structure(text: str, start: int = 0) -> ScanState:
    """Scan `text` from the opener at `start` until its value closes.

    Closers that do not match the innermost opener are skipped (and counted),
    so a stray `]` inside an object cannot end the span early.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    last_complete: Optional[int] = None
    mismatched = 0

    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in OPENERS:
            stack.append(char)
        elif char in CLOSERS:
            if stack and stack[-1] == CLOSERS[char]:
                stack.pop()
                if not stack:
                    return ScanState(
                        end=index + 1,
                        open_stack=(),
                        in_string=False,
                        last_complete=index + 1,
                        mismatched_closers=mismatched,
                    )
                last_complete = index + 1
            else:
                mismatched += 1

    return ScanState(
        end=None,
        open_stack=tuple(stack),
        in_string=in_string,
        last_complete=last_complete,
        mismatched_closers=mismatched,
    )


@dataclass(frozen=True)
class JsonSpan:
    """Substring believed to contain the JSON value, plus how it was cut.

    `start`/`end` are offsets into the sanitized text. `open_stack`,
    `in_string` and `last_complete` describe a truncated span (offsets in
    `last_complete` are relative to `text`).
    """

    text: str
    start: int
    end: int
    found: bool = True
    truncated: bool = False
    open_stack: tuple[str, ...] = ()
    in_string: bool = False
    last_complete: Optional[int] = None

    @property
    def brace_depth(self) -> int:
        return self.open_stack.count("{")

    @property
    def bracket_depth(self) -> int:
        return self.open_stack.count("[")


def _next_opener(text: str, start: int = 0) -> int:
    positions = [pos for pos in (text.find("{", start), text.find("[", start)) if pos != -1]
    return min(positions) if positions else -1


def _candidates(text: str) -> Iterator[tuple[int, ScanState]]:
    """Yield (start, scan) for each opener that begins like a JSON value, in text order.

    After a balanced value the search resumes past its closer. Openers that
    do not start a JSON value ("[photo 1]", "(see [note") are stepped over one
    character at a time, so the payload they precede or enclose is still found.
    """
    start = _next_opener(text)
    scanned = 0
    while start != -1 and scanned < MAX_CANDIDATES:
        if not VALUE_START_RE.match(text, start):
            start = _next_opener(text, start + 1)
            continue
        state = scan_structure(text, start)
        scanned += 1
        yield start, state
        start = _next_opener(text, state.end if state.balanced else start + 1)


def _select_candidate(text: str) -> Optional[tuple[int, ScanState]]:
    """First candidate with item-like keys, else the first with any member key.

    Falls back to the first opener in the text when no candidate qualifies.
    """
    keyed: Optional[tuple[int, ScanState]] = None
    for start, state in _candidates(text):
        body = text[start:state.end] if state.balanced else text[start:]
        if ITEM_KEY_RE.search(body):
            return start, state
        if keyed is None and MEMBER_KEY_RE.search(body):
            keyed = start, state
    if keyed is not None:
        return keyed
    start = _next_opener(text)
    if start == -1:
        return None
    return start, scan_structure(text, start)


def locate_json_span(
    sanitized: Union[SanitizedText, str],
) -> tuple[JsonSpan, list[ExtractionDiagnostic]]:
    """Locate the embedded JSON value in sanitized text.

    Returns the span and any diagnostics. Without an opener the whole text is
    passed through (found=False) so later layers can still try it. When the
    value never closes, the span runs to the end of the text and is flagged
    as truncated.
    """
    text = sanitized.text if isinstance(sanitized, SanitizedText) else str(sanitized or "")
    diagnostics: list[ExtractionDiagnostic] = []

    selected = None
    if not (isinstance(sanitized, SanitizedText) and sanitized.prose_only):
        selected = _select_candidate(text)

    if selected is None:
        diagnostics.append(
            ExtractionDiagnostic.create(
                PipelineStage.LOCATE,
                DiagnosticKind.NO_STRUCTURE_FOUND,
                "No JSON object or array found in the response",
                severity=Severity.WARNING,
                fragment=text[:120] if text else None,
            )
        )
        logger.info("locate_no_structure | chars=%s | fallback=full_text", len(text))
        return JsonSpan(text=text, start=0, end=len(text), found=False), diagnostics

    start, state = selected
    if state.balanced:
        end = state.end or len(text)
        logger.debug(
            "locate_complete | start=%s | end=%s | trailing_chars=%s",
            start,
            end,
            len(text) - end,
        )
        return JsonSpan(text=text[start:end], start=start, end=end), diagnostics

    span_text = text[start:]
    last_complete = None
    if state.last_complete is not None:
        last_complete = state.last_complete - start
    diagnostics.append(
        ExtractionDiagnostic.create(
            PipelineStage.LOCATE,
            DiagnosticKind.TRUNCATED_INPUT,
            (
                "Structured value never closes; response is possibly truncated "
                f"({state.brace_depth} brace(s), {state.bracket_depth} bracket(s) left open"
                f"{', inside a string' if state.in_string else ''})"
            ),
            severity=Severity.WARNING,
            fragment=span_text[-80:],
        )
    )
    logger.warning(
        "locate_truncated | start=%s | open=%s | in_string=%s | last_complete=%s",
        start,
        "".join(state.open_stack),
        state.in_string,
        last_complete,
    )
    return (
        JsonSpan(
            text=span_text,
            start=start,
            end=len(text),
            found=True,
            truncated=True,
            open_stack=state.open_stack,
            in_string=state.in_string,
            last_complete=last_complete,
        ),
        diagnostics,
    )
