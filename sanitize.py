"""
sanitize.py - Text Sanitizer, the first pipeline stage.

Language-model responses are asked for "ONLY the JSON object" and routinely
ignore that: the payload arrives inside ```json fences, behind a
"Here is the receipt data:" lead-in, or followed by a closing remark.
This stage removes the wrappers it can recognize cheaply. It never fails;
in the worst case it returns the input unchanged.

Prose that survives here is harmless: the Boundary Locator finds the
structured value inside whatever text remains.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from logging_config import get_logger
from models import DiagnosticKind, ExtractionDiagnostic, PipelineStage

logger = get_logger(__name__)

# Opening fence with optional language tag, body, closing fence or end of
# text (truncated responses often lose the closing fence).
FENCED_BLOCK_RE = re.compile(
    r"```[ \t]*(?P<lang>[A-Za-z0-9_+.-]*)[ \t]*\r?\n?(?P<body>.*?)(?:```|\Z)",
    re.DOTALL,
)
FENCE_MARKER_RE = re.compile(r"```[ \t]*[A-Za-z0-9_+.-]*")

# "Here is the receipt data:", "Sure! Here's the JSON:", "Below is ..."
WRAPPER_PREFIX_RE = re.compile(
    r"^\s*(?:(?:sure|okay|ok|certainly|of course)[,!.]?\s+)?"
    r"(?:here\s+is|here's|here\s+are|below\s+is|the\s+following\s+is)\b[^\n{\[]*?:\s*",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SanitizedText:
    """RawResponse with wrappers removed.

    `prose_only` is the empty-span marker: no `{` or `[` survived, so there is
    no structured value for the Boundary Locator to find.
    """

    text: str
    prose_only: bool
    diagnostics: tuple[ExtractionDiagnostic, ...] = field(default_factory=tuple)


def _has_structure(text: str) -> bool:
    return "{" in text or "[" in text


def _unwrap_fences(text: str) -> tuple[str, str | None]:
    """Return (text without fences, language tag or '' if fences were found, else None)."""
    if "```" not in text:
        return text, None

    for match in FENCED_BLOCK_RE.finditer(text):
        body = match.group("body")
        if _has_structure(body):
            return body, match.group("lang") or ""

    # Fences without a structured body: drop the markers, keep everything else.
    return FENCE_MARKER_RE.sub("", text), ""


def sanitize_response(raw_response: object) -> SanitizedText:
    """Strip markdown fences and wrapper prose from an upstream response."""
    if raw_response is None:
        text = ""
    elif isinstance(raw_response, str):
        text = raw_response
    else:
        text = str(raw_response)

    diagnostics: list[ExtractionDiagnostic] = []

    unwrapped, lang = _unwrap_fences(text)
    if lang is not None:
        diagnostics.append(
            ExtractionDiagnostic.create(
                PipelineStage.SANITIZE,
                DiagnosticKind.FENCES_REMOVED,
                f"Removed markdown code fence (language tag: {lang or 'none'})",
            )
        )
        text = unwrapped

    text = text.strip()

    wrapper = WRAPPER_PREFIX_RE.match(text)
    if wrapper and _has_structure(text[wrapper.end():]):
        diagnostics.append(
            ExtractionDiagnostic.create(
                PipelineStage.SANITIZE,
                DiagnosticKind.WRAPPER_REMOVED,
                "Removed lead-in prose before the structured payload",
                fragment=wrapper.group(0).strip(),
            )
        )
        text = text[wrapper.end():].strip()

    prose_only = not _has_structure(text)
    logger.debug(
        "sanitize_complete | chars_in=%s | chars_out=%s | prose_only=%s | notes=%s",
        len(raw_response) if isinstance(raw_response, str) else 0,
        len(text),
        prose_only,
        len(diagnostics),
    )
    return SanitizedText(text=text, prose_only=prose_only, diagnostics=tuple(diagnostics))
