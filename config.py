"""
config.py - Pipeline configuration.

`PipelineConfig` is the only knob set the pipeline recognizes:

    strict_mode          disable the repair and heuristic parse layers
    max_repair_attempts  how many repair candidates the repair layer may try
    category_overrides   keyword -> category, checked before built-in rules
    extra_categories     additional taxonomy values accepted from upstream

Configs are immutable and passed explicitly into every invocation. The
`load_config()` helper builds one from environment variables (after loading
a local .env file) for the CLI and HTTP entry points.
"""

from __future__ import annotations

import json
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Fallback for legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")

# Upper bound on repair candidates; the repair layer only has two strategies
# today, extra attempts are simply unused.
MAX_REPAIR_ATTEMPTS_LIMIT = 10

ENV_STRICT_MODE = "RECEIPT_STRICT_MODE"
ENV_MAX_REPAIR_ATTEMPTS = "RECEIPT_MAX_REPAIR_ATTEMPTS"
ENV_CATEGORY_OVERRIDES = "RECEIPT_CATEGORY_OVERRIDES"
ENV_EXTRA_CATEGORIES = "RECEIPT_EXTRA_CATEGORIES"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def normalize_label(value: object) -> str:
    """Lowercase a category label and collapse punctuation/spacing to '_'.

    'Veterinary Health', 'veterinary-health' and ' VETERINARY_HEALTH. ' all
    become 'veterinary_health'.
    """
    text = str(value or "").strip().lower()
    out: list[str] = []
    pending_sep = False
    for char in text:
        if char.isalnum():
            if pending_sep and out:
                out.append("_")
            out.append(char)
            pending_sep = False
        else:
            pending_sep = True
    return "".join(out)


class PipelineConfig(BaseModel):
    """Immutable pipeline configuration. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    strict_mode: bool = Field(
        default=False,
        description="When True only the strict JSON parse is attempted.",
    )
    max_repair_attempts: int = Field(
        default=1,
        ge=0,
        le=MAX_REPAIR_ATTEMPTS_LIMIT,
        description=(
            "Number of repair candidates tried in order: first the full span "
            "closed as-is, then the span cut back to its last complete value."
        ),
    )
    category_overrides: dict[str, str] = Field(
        default_factory=dict,
        description=(
            "Keyword -> category rules evaluated before the built-in rule "
            "table, in insertion order. Target categories join the taxonomy."
        ),
    )
    extra_categories: list[str] = Field(default_factory=list)

    @field_validator("category_overrides")
    @classmethod
    def _clean_overrides(cls, value: dict[str, str]) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for keyword, category in value.items():
            kw = " ".join(str(keyword).lower().split())
            target = normalize_label(category)
            if not kw or not target:
                raise ValueError(f"invalid category override {keyword!r} -> {category!r}")
            cleaned[kw] = target
        return cleaned

    @field_validator("extra_categories")
    @classmethod
    def _clean_extra_categories(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for raw in value:
            label = normalize_label(raw)
            if label and label not in cleaned:
                cleaned.append(label)
        return cleaned

    @property
    def repair_enabled(self) -> bool:
        return not self.strict_mode and self.max_repair_attempts > 0

    @property
    def heuristic_enabled(self) -> bool:
        return not self.strict_mode


DEFAULT_CONFIG = PipelineConfig()


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_overrides(raw: str) -> dict[str, str]:
    """Parse a JSON object or a `keyword=category,keyword=category` list."""
    raw = raw.strip()
    if not raw:
        return {}
    if raw.startswith("{"):
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("category overrides must be a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    overrides: dict[str, str] = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        keyword, sep, category = pair.partition("=")
        if not sep:
            raise ValueError(f"override {pair!r} is missing '='")
        overrides[keyword.strip()] = category.strip()
    return overrides


def load_config(env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """Build a PipelineConfig from environment variables.

    Each variable is read independently; a malformed value is logged and its
    field keeps the default instead of aborting startup.
    """
    env = os.environ if env is None else env
    values: dict[str, object] = {}

    readers = (
        ("strict_mode", ENV_STRICT_MODE, _parse_bool),
        ("max_repair_attempts", ENV_MAX_REPAIR_ATTEMPTS, lambda raw: int(raw.strip())),
        ("category_overrides", ENV_CATEGORY_OVERRIDES, _parse_overrides),
        (
            "extra_categories",
            ENV_EXTRA_CATEGORIES,
            lambda raw: [part.strip() for part in raw.split(",") if part.strip()],
        ),
    )
    for field_name, env_name, reader in readers:
        raw = env.get(env_name)
        if raw is None:
            continue
        try:
            candidate = reader(raw)
            # Validate each field alone so one bad variable cannot void the others.
            PipelineConfig(**{field_name: candidate})
        except (ValueError, ValidationError) as exc:
            logger.warning(
                "config_env_invalid | var=%s | value=%r | error=%s | fallback=default",
                env_name,
                raw,
                exc,
            )
            continue
        values[field_name] = candidate

    config = PipelineConfig(**values)
    logger.debug(
        "config_loaded | strict_mode=%s | max_repair_attempts=%s | overrides=%s | extra_categories=%s",
        config.strict_mode,
        config.max_repair_attempts,
        len(config.category_overrides),
        config.extra_categories,
    )
    return config
