"""
categorize.py - Categorizer.

Assigns each line item a category from the taxonomy. The decision order:

1. The upstream category, when it names a taxonomy value (case and
   punctuation insensitive, small typos tolerated through rapidfuzz).
2. An ordered rule table over the normalized description. Caller overrides
   come first, then the built-in rules from most to least specific. The first
   matching rule wins.
3. `uncategorized_supplies`, with an UNKNOWN_CATEGORY warning so the item is
   surfaced for review.

Items are never removed. Feed items also get a per-unit weight in pounds
read from the description ("50lb", "25 kg", "1 ton") when the response did
not report one.

Once the category is settled, a subcategory ("hay", "dewormers", "tack") is
taken from the response when it names one the category knows, else from the
first matching entry of SUBCATEGORY_RULES.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from rapidfuzz import fuzz, process

from config import DEFAULT_CONFIG, PipelineConfig, normalize_label
from logging_config import get_logger
from models import (
    DEFAULT_TAXONOMY,
    MAX_AMOUNT,
    Category,
    CategorySource,
    DiagnosticKind,
    ExtractionDiagnostic,
    LineItem,
    PipelineStage,
    ReceiptRecord,
    Severity,
)

logger = get_logger(__name__)

# rapidfuzz ratio (0-100) above which an upstream label counts as a typo of a
# taxonomy value. "veterinary_helth" scores ~97, "equipment" vs "supplies" ~35.
FUZZY_LABEL_CUTOFF = 90

TOKEN_RE = re.compile(r"[a-z0-9]+")
WEIGHT_RE = re.compile(
    r"(?P<amount>\d+(?:\.\d+)?)\s*-?\s*(?P<unit>lbs?|#|pounds?|kgs?|kilograms?|tons?|oz)(?![a-z])",
    re.IGNORECASE,
)
POUNDS_PER_UNIT: dict[str, Decimal] = {
    "lb": Decimal("1"),
    "#": Decimal("1"),
    "pound": Decimal("1"),
    "kg": Decimal("2.20462"),
    "kilogram": Decimal("2.20462"),
    "ton": Decimal("2000"),
    "oz": Decimal("0.0625"),
}

# Labels models commonly use instead of the taxonomy values.
CATEGORY_ALIASES: dict[str, str] = {
    "feed": Category.FEED_SUPPLIES.value,
    "feeds": Category.FEED_SUPPLIES.value,
    "feed_and_hay": Category.FEED_SUPPLIES.value,
    "vet": Category.VETERINARY_HEALTH.value,
    "veterinary": Category.VETERINARY_HEALTH.value,
    "health": Category.VETERINARY_HEALTH.value,
    "medical": Category.VETERINARY_HEALTH.value,
    "grooming": Category.SUPPLIES.value,
    "grooming_supplies": Category.SUPPLIES.value,
    "bedding": Category.SUPPLIES.value,
    "tools": Category.EQUIPMENT.value,
}

VETERINARY_KEYWORDS = (
    "vaccine", "vaccination", "dewormer", "deworming", "wormer", "drench",
    "antibiotic", "penicillin", "ivermectin", "oxytetracycline", "medicine",
    "medication", "injectable", "syringe", "needle", "bandage", "vetwrap",
    "ointment", "antiseptic", "iodine", "wound", "vet", "veterinary",
    "electrolyte", "probiotic", "pour on",
)
SUPPLIES_KEYWORDS = (
    "shampoo", "conditioner", "detangler", "brush", "comb", "curry", "muzzle",
    "clipper", "show sheen", "fly spray", "hoof pick", "shaving", "bedding",
    "sawdust", "soap", "sponge", "towel", "glove", "wipe", "cleaner",
    "disinfectant",
)
EQUIPMENT_KEYWORDS = (
    "bucket", "pan", "feeder", "waterer", "trough", "tank", "heater", "halter",
    "lead rope", "rope", "collar", "leash", "fence", "fencing", "gate", "panel",
    "wheelbarrow", "shovel", "pitchfork", "fork", "rake", "hose", "scale",
    "blanket", "saddle", "bridle", "tool", "plier", "hammer", "battery",
    "charger", "lamp", "light",
)
FEED_KEYWORDS = (
    "feed", "grain", "hay", "alfalfa", "oat", "corn", "pellet", "ration",
    "supplement", "mineral", "salt", "lick", "chow", "food", "kibble", "creep",
    "bran", "beet pulp", "mash", "scratch", "treat",
)

# Finer grouping inside each built-in category. Entries are tried in order and
# the first whose keywords match the description wins.
SUBCATEGORY_RULES: dict[str, tuple[tuple[str, tuple[str, ...]], ...]] = {
    Category.FEED_SUPPLIES.value: (
        ("hay", ("hay", "alfalfa", "timothy", "orchard grass", "bermuda")),
        ("minerals", ("mineral", "salt", "lick")),
        ("supplements", ("supplement", "probiotic", "electrolyte", "vitamin")),
        ("treats", ("treat", "cookie", "biscuit")),
        ("pet_food", ("dog", "cat", "puppy", "kitten", "kibble")),
        ("grain", (
            "grain", "oat", "corn", "barley", "sweet feed", "pellet", "ration",
            "bran", "beet pulp", "mash", "scratch", "creep", "chow", "feed",
        )),
    ),
    Category.VETERINARY_HEALTH.value: (
        ("vaccinations", ("vaccine", "vaccination")),
        ("dewormers", ("dewormer", "deworming", "wormer", "drench", "ivermectin")),
        ("medications", (
            "antibiotic", "penicillin", "oxytetracycline", "medicine",
            "medication", "injectable", "pour on",
        )),
        ("wound_care", ("bandage", "vetwrap", "ointment", "antiseptic", "iodine", "wound")),
        ("supplements", ("electrolyte", "probiotic")),
        ("instruments", ("syringe", "needle")),
    ),
    Category.SUPPLIES.value: (
        ("grooming", (
            "shampoo", "conditioner", "detangler", "brush", "comb", "curry",
            "clipper", "show sheen", "hoof pick",
        )),
        ("bedding", ("shaving", "bedding", "sawdust", "straw")),
        ("pest_control", ("fly spray", "insecticide", "repellent")),
        ("cleaning", ("soap", "sponge", "towel", "glove", "wipe", "cleaner", "disinfectant")),
    ),
    Category.EQUIPMENT.value: (
        ("feeding_watering", ("bucket", "pan", "feeder", "waterer", "trough", "tank", "heater")),
        ("tack", ("halter", "lead rope", "rope", "collar", "leash", "blanket", "saddle", "bridle")),
        ("fencing", ("fence", "fencing", "gate", "panel")),
        ("electrical", ("battery", "charger", "lamp", "light")),
        ("tools", (
            "wheelbarrow", "shovel", "pitchfork", "fork", "rake", "hose", "scale",
            "tool", "plier", "hammer",
        )),
    ),
}


@dataclass(frozen=True)
class ItemText:
    """Description prepared for matching: lowercase tokens, singular forms added."""

    raw: str
    text: str
    tokens: frozenset[str]

    @classmethod
    def from_description(cls, description: str) -> "ItemText":
        tokens = TOKEN_RE.findall(description.lower())
        expanded = set(tokens)
        for token in tokens:
            if len(token) > 3 and token.endswith("s"):
                expanded.add(token[:-1])
        return cls(raw=description, text=" " + " ".join(tokens) + " ", tokens=frozenset(expanded))

    def has_keyword(self, keyword: str) -> bool:
        parts = TOKEN_RE.findall(keyword.lower())
        if len(parts) == 1:
            return parts[0] in self.tokens
        return (" " + " ".join(parts) + " ") in self.text


Predicate = Callable[[ItemText], bool]
Rule = tuple[Predicate, str]


def keyword_rule(keywords: tuple[str, ...]) -> Predicate:
    def predicate(item: ItemText) -> bool:
        return any(item.has_keyword(keyword) for keyword in keywords)

    return predicate


def _has_weight(item: ItemText) -> bool:
    return WEIGHT_RE.search(item.raw) is not None


def _feed_rule(item: ItemText) -> bool:
    return keyword_rule(FEED_KEYWORDS)(item) or _has_weight(item)


# Priority order: specific categories before the feed catch-all, so a
# "Rubber Feed Pan" is equipment and "Dewormer Feed Additive" is veterinary.
BUILTIN_RULES: tuple[Rule, ...] = (
    (keyword_rule(VETERINARY_KEYWORDS), Category.VETERINARY_HEALTH.value),
    (keyword_rule(SUPPLIES_KEYWORDS), Category.SUPPLIES.value),
    (keyword_rule(EQUIPMENT_KEYWORDS), Category.EQUIPMENT.value),
    (_feed_rule, Category.FEED_SUPPLIES.value),
)


def build_rules(config: PipelineConfig) -> tuple[Rule, ...]:
    """Caller overrides (in insertion order) followed by the built-in rules."""
    overrides = tuple(
        (keyword_rule((keyword,)), category) for keyword, category in config.category_overrides.items()
    )
    return overrides + BUILTIN_RULES


def build_taxonomy(config: PipelineConfig) -> tuple[str, ...]:
    taxonomy = list(DEFAULT_TAXONOMY)
    for label in list(config.category_overrides.values()) + list(config.extra_categories):
        if label not in taxonomy:
            taxonomy.append(label)
    return tuple(taxonomy)


def match_category_label(label: Optional[str], taxonomy: tuple[str, ...]) -> Optional[str]:
    """Map an upstream category string onto the taxonomy, or None."""
    normalized = normalize_label(label)
    if not normalized:
        return None
    if normalized in taxonomy:
        return normalized
    alias = CATEGORY_ALIASES.get(normalized)
    if alias in taxonomy:
        return alias
    best = process.extractOne(normalized, taxonomy, scorer=fuzz.ratio, score_cutoff=FUZZY_LABEL_CUTOFF)
    if best is not None:
        return best[0]
    return None


def classify_description(description: str, rules: tuple[Rule, ...]) -> Optional[tuple[str, int]]:
    """Return (category, rule index) of the first matching rule."""
    item = ItemText.from_description(description)
    for position, (predicate, category) in enumerate(rules):
        if predicate(item):
            return category, position
    return None


def feed_weight_from_description(description: str) -> Optional[Decimal]:
    """Per-unit weight in pounds from text like "50lb", "22.7 kg" or "1 ton"."""
    match = WEIGHT_RE.search(description)
    if not match:
        return None
    unit = match.group("unit").lower()
    if unit != "#":
        unit = unit.rstrip("s")
    factor = POUNDS_PER_UNIT.get(unit)
    if factor is None:
        return None
    pounds = Decimal(match.group("amount")) * factor
    if pounds >= MAX_AMOUNT:
        return None
    return pounds.quantize(Decimal("0.01"))


def classify_subcategory(description: str, category: str) -> Optional[str]:
    """First subcategory of `category` whose keywords match, or None."""
    item = ItemText.from_description(description)
    for subcategory, keywords in SUBCATEGORY_RULES.get(category, ()):
        if any(item.has_keyword(keyword) for keyword in keywords):
            return subcategory
    return None


def match_subcategory_label(label: Optional[str], category: str) -> Optional[str]:
    """Map an upstream subcategory onto the category's known subcategories.

    Categories without a subcategory table (custom ones, the fallback) keep
    the upstream label as-is, normalized.
    """
    normalized = normalize_label(label)
    if not normalized:
        return None
    known = tuple(name for name, _ in SUBCATEGORY_RULES.get(category, ()))
    if not known or normalized in known:
        return normalized
    best = process.extractOne(normalized, known, scorer=fuzz.ratio, score_cutoff=FUZZY_LABEL_CUTOFF)
    return best[0] if best is not None else None


def _diag(
    kind: DiagnosticKind,
    message: str,
    severity: Severity,
    item: LineItem,
    index: int,
) -> ExtractionDiagnostic:
    return ExtractionDiagnostic.create(
        PipelineStage.CATEGORIZE,
        kind,
        message,
        severity=severity,
        fragment=item.raw_fragment or item.description,
        item_index=index,
    )


def categorize_item(
    item: LineItem,
    index: int,
    rules: tuple[Rule, ...],
    taxonomy: tuple[str, ...],
    override_count: int = 0,
) -> tuple[LineItem, list[ExtractionDiagnostic]]:
    diagnostics: list[ExtractionDiagnostic] = []
    category: Optional[str] = None
    source: Optional[CategorySource] = None

    if item.reported_category:
        accepted = match_category_label(item.reported_category, taxonomy)
        if accepted is not None and accepted != Category.UNCATEGORIZED.value:
            category, source = accepted, CategorySource.UPSTREAM
        elif accepted is None:
            diagnostics.append(
                _diag(
                    DiagnosticKind.UPSTREAM_CATEGORY_REJECTED,
                    f"Upstream category {item.reported_category!r} is not in the taxonomy; using rules",
                    Severity.INFO,
                    item,
                    index,
                )
            )

    if category is None:
        matched = classify_description(item.description, rules)
        if matched is not None:
            category, position = matched
            source = CategorySource.OVERRIDE if position < override_count else CategorySource.RULE

    if category is None:
        category, source = Category.UNCATEGORIZED.value, CategorySource.DEFAULT
        diagnostics.append(
            _diag(
                DiagnosticKind.UNKNOWN_CATEGORY,
                f"No category rule matched {item.description!r}; assigned {category}",
                Severity.WARNING,
                item,
                index,
            )
        )

    feed_weight = item.feed_weight_lbs
    if category == Category.FEED_SUPPLIES.value and feed_weight is None:
        feed_weight = feed_weight_from_description(item.description)
        if feed_weight is None:
            diagnostics.append(
                _diag(
                    DiagnosticKind.MISSING_FEED_WEIGHT,
                    f"Feed item {item.description!r} has no recognizable weight",
                    Severity.INFO,
                    item,
                    index,
                )
            )

    subcategory = match_subcategory_label(item.reported_subcategory, category)
    if subcategory is None:
        subcategory = classify_subcategory(item.description, category)

    updated = item.model_copy(
        update={
            "category": category,
            "category_source": source,
            "subcategory": subcategory,
            "feed_weight_lbs": feed_weight,
        }
    )
    return updated, diagnostics


def categorize_items(
    record: ReceiptRecord, config: Optional[PipelineConfig] = None
) -> tuple[ReceiptRecord, list[ExtractionDiagnostic]]:
    """Assign a category to every item of the record, preserving order."""
    config = config or DEFAULT_CONFIG
    rules = build_rules(config)
    taxonomy = build_taxonomy(config)
    override_count = len(config.category_overrides)

    diagnostics: list[ExtractionDiagnostic] = []
    items: list[LineItem] = []
    for index, item in enumerate(record.items):
        updated, notes = categorize_item(item, index, rules, taxonomy, override_count)
        items.append(updated)
        diagnostics.extend(notes)
        logger.debug(
            "categorize_item | index=%s | category=%s | subcategory=%s | source=%s",
            index,
            updated.category,
            updated.subcategory,
            updated.category_source.value if updated.category_source else None,
        )

    logger.debug(
        "categorize_complete | items=%s | uncategorized=%s",
        len(items),
        sum(1 for item in items if item.category == Category.UNCATEGORIZED.value),
    )
    return record.model_copy(update={"items": items}), diagnostics
