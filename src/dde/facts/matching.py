"""
Fact matching and contradiction detection.

Decides what happens to a newly submitted fact given the current view of
a subject's facts. All functions here are pure; the store turns their
outcomes into ledger events.

Resolution order for a new fact:
1. Exact key match against the current view.
2. Otherwise a parent/child match on dotted keys, always sent to review.
3. Otherwise the fact is NEW.

For an exact match a numeric change of more than 30% is sent to review
whatever the sources, a human override included. Otherwise a human
override supersedes and smaller changes are settled by source priority.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import orjson

from dde.facts.keys import are_parent_child, is_numeric_key, key_segments
from dde.types import (
    ContradictionInfo,
    ContradictionSignificance,
    CurrentFact,
    ExtractedFact,
    FactSource,
    MatchOutcome,
    MatchType,
)

SOURCE_PRIORITY: dict[FactSource, int] = {
    FactSource.DATA_ROOM: 100,
    FactSource.BA_OVERRIDE: 100,
    FactSource.FINANCIAL_MODEL: 95,
    FactSource.FOUNDER_RESPONSE: 90,
    FactSource.PITCH_DECK: 80,
    FactSource.CONTEXT_ENGINE: 60,
}

HUMAN_OVERRIDE_SOURCES: frozenset[FactSource] = frozenset({FactSource.BA_OVERRIDE})

MINOR_THRESHOLD = 0.05
SIGNIFICANT_THRESHOLD = 0.15
MAJOR_THRESHOLD = 0.30

_NUMBER_RE = re.compile(r"^([-+]?\d+(?:\.\d+)?)([kmb])?$", re.IGNORECASE)
_MULTIPLIERS = {"k": 1e3, "m": 1e6, "b": 1e9}
_STRIP_CHARS = re.compile(r"[\s,€$£%_]")


# ---------------------------------------------------------------------------
# Source priority
# ---------------------------------------------------------------------------


def get_source_priority(source: FactSource | str) -> int:
    """Priority of a source; unknown sources rank lowest (0)."""
    try:
        return SOURCE_PRIORITY.get(FactSource(source), 0)
    except ValueError:
        return 0


def compare_source_priority(a: FactSource | str, b: FactSource | str) -> int:
    """Positive if ``a`` outranks ``b``, negative if it ranks lower, 0 if equal."""
    return get_source_priority(a) - get_source_priority(b)


def get_sources_by_priority() -> list[FactSource]:
    """All sources, highest priority first."""
    return sorted(FactSource, key=get_source_priority, reverse=True)


def is_human_override(source: FactSource) -> bool:
    return source in HUMAN_OVERRIDE_SOURCES


# ---------------------------------------------------------------------------
# Contradictions
# ---------------------------------------------------------------------------


def extract_numeric(value: Any, numeric_hint: bool | None = None) -> float | None:
    """Numeric reading of a fact value, or None if it has none.

    Accepts numbers, ``{"amount": ...}`` / ``{"value": ...}`` mappings and,
    unless the key is known to be non-numeric, strings such as
    ``"€1.2M"`` or ``"45%"``.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, Mapping):
        for key in ("amount", "value"):
            if key in value:
                return extract_numeric(value[key], numeric_hint)
        return None
    if isinstance(value, str) and numeric_hint is not False:
        match = _NUMBER_RE.match(_STRIP_CHARS.sub("", value))
        if match is None:
            return None
        number = float(match.group(1))
        suffix = match.group(2)
        return number * _MULTIPLIERS[suffix.lower()] if suffix else number
    return None


def relative_delta(existing: float, new: float) -> float:
    """|new - existing| / |existing|, with a zero baseline counting as a full change."""
    if existing == 0:
        return 0.0 if new == 0 else 1.0
    return abs(new - existing) / abs(existing)


def classify_delta(delta: float) -> ContradictionSignificance | None:
    if delta > MAJOR_THRESHOLD:
        return ContradictionSignificance.MAJOR
    if delta >= SIGNIFICANT_THRESHOLD:
        return ContradictionSignificance.SIGNIFICANT
    if delta >= MINOR_THRESHOLD:
        return ContradictionSignificance.MINOR
    return None


def values_equal(a: Any, b: Any) -> bool:
    """Loose equality used for non-numeric values and duplicate detection."""
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().casefold() == b.strip().casefold()
    if isinstance(a, bool) or isinstance(b, bool):
        return a is b
    return orjson.dumps(a, option=orjson.OPT_SORT_KEYS, default=str) == orjson.dumps(
        b, option=orjson.OPT_SORT_KEYS, default=str
    )


def detect_contradiction(
    fact_key: str,
    existing_value: Any,
    new_value: Any,
) -> ContradictionInfo | None:
    """Compare two values for the same key.

    Numeric values below a 5% change are not a contradiction. Differing
    non-numeric values are always a minor one.
    """
    hint = is_numeric_key(fact_key)
    old_num = extract_numeric(existing_value, hint)
    new_num = extract_numeric(new_value, hint)

    if old_num is not None and new_num is not None:
        delta = relative_delta(old_num, new_num)
        significance = classify_delta(delta)
        if significance is None:
            return None
        return ContradictionInfo(
            significance=significance,
            existing_value=existing_value,
            new_value=new_value,
            delta=delta,
        )

    if values_equal(existing_value, new_value):
        return None
    return ContradictionInfo(
        significance=ContradictionSignificance.MINOR,
        existing_value=existing_value,
        new_value=new_value,
    )


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _index(existing: Mapping[str, CurrentFact] | Iterable[CurrentFact]) -> dict[str, CurrentFact]:
    if isinstance(existing, Mapping):
        return dict(existing)
    return {f.fact_key: f for f in existing}


def find_related_fact(fact_key: str, facts: Iterable[CurrentFact]) -> CurrentFact | None:
    """Closest parent or child of ``fact_key``; ties go to the most recently updated."""
    depth = len(key_segments(fact_key))
    candidates = [f for f in facts if are_parent_child(f.fact_key, fact_key)]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda f: (
            abs(len(key_segments(f.fact_key)) - depth),
            -f.last_updated_at.timestamp(),
            f.fact_key,
        ),
    )


def match_fact(
    new_fact: ExtractedFact,
    existing_facts: Mapping[str, CurrentFact] | Iterable[CurrentFact],
) -> MatchOutcome:
    """Decide how a submitted fact relates to the current view."""
    current = _index(existing_facts)
    existing = current.get(new_fact.fact_key)

    if existing is None:
        related = find_related_fact(new_fact.fact_key, current.values())
        if related is not None:
            return MatchOutcome(
                type=MatchType.REVIEW_NEEDED,
                fact=new_fact,
                existing=related,
                fuzzy=True,
                reason=(
                    f"Related key '{related.fact_key}' already holds "
                    f"{related.current_display_value} from {related.current_source.value}"
                ),
            )
        return MatchOutcome(
            type=MatchType.NEW,
            fact=new_fact,
            reason="No existing fact for this key",
        )

    contradiction = detect_contradiction(
        new_fact.fact_key, existing.current_value, new_fact.value
    )

    if contradiction is not None and contradiction.significance is ContradictionSignificance.MAJOR:
        return MatchOutcome(
            type=MatchType.REVIEW_NEEDED,
            fact=new_fact,
            existing=existing,
            contradiction=contradiction,
            reason=(
                f"Major contradiction: {existing.current_display_value} "
                f"({existing.current_source.value}) vs {new_fact.display_value} "
                f"({new_fact.source.value}), delta {contradiction.delta:.0%}"
            ),
        )

    if is_human_override(new_fact.source):
        return MatchOutcome(
            type=MatchType.SUPERSEDE,
            fact=new_fact,
            existing=existing,
            contradiction=contradiction,
            reason="Human override",
        )

    comparison = compare_source_priority(new_fact.source, existing.current_source)
    if comparison > 0:
        return MatchOutcome(
            type=MatchType.SUPERSEDE,
            fact=new_fact,
            existing=existing,
            contradiction=contradiction,
            reason=(
                f"{new_fact.source.value} outranks {existing.current_source.value}"
            ),
        )
    if comparison == 0:
        return MatchOutcome(
            type=MatchType.SUPERSEDE,
            fact=new_fact,
            existing=existing,
            contradiction=contradiction,
            reason="Same source priority, most recent wins",
        )
    return MatchOutcome(
        type=MatchType.IGNORE,
        fact=new_fact,
        existing=existing,
        contradiction=contradiction,
        reason=(
            f"{existing.current_source.value} outranks {new_fact.source.value}"
        ),
    )


@dataclass
class BatchMatchResult:
    """Outcomes of matching several facts against one static view."""

    new: list[MatchOutcome] = field(default_factory=list)
    to_supersede: list[MatchOutcome] = field(default_factory=list)
    to_ignore: list[MatchOutcome] = field(default_factory=list)
    needs_review: list[MatchOutcome] = field(default_factory=list)
    contradictions: list[MatchOutcome] = field(default_factory=list)

    @property
    def outcomes(self) -> list[MatchOutcome]:
        return [*self.new, *self.to_supersede, *self.to_ignore, *self.needs_review]


def match_facts_batch(
    new_facts: Iterable[ExtractedFact],
    existing_facts: Mapping[str, CurrentFact] | Iterable[CurrentFact],
) -> BatchMatchResult:
    """Match each fact independently and group the outcomes by type."""
    current = _index(existing_facts)
    result = BatchMatchResult()
    buckets = {
        MatchType.NEW: result.new,
        MatchType.SUPERSEDE: result.to_supersede,
        MatchType.IGNORE: result.to_ignore,
        MatchType.REVIEW_NEEDED: result.needs_review,
    }
    for fact in new_facts:
        outcome = match_fact(fact, current)
        buckets[outcome.type].append(outcome)
        if outcome.contradiction is not None:
            result.contradictions.append(outcome)
    return result


def should_persist(outcome: MatchOutcome) -> bool:
    """IGNORE outcomes leave no trace in the ledger."""
    return outcome.type is not MatchType.IGNORE


def needs_review(outcome: MatchOutcome) -> bool:
    return outcome.type is MatchType.REVIEW_NEEDED
