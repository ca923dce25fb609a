"""
Current-facts view.

The view is never stored: it is recomputed by replaying a subject's
ledger. Replay is deterministic. Events are ordered by (created_at, id),
and ids are time-ordered UUID7s, so the same events produce the same view
however they were fetched.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import orjson

from dde.facts.keys import get_definition
from dde.types import (
    CurrentFact,
    DisputeDetails,
    FactCategory,
    FactEvent,
    FactEventType,
    FactSource,
)

CATEGORY_TITLES: dict[FactCategory, str] = {
    FactCategory.FINANCIAL: "Financial Metrics",
    FactCategory.TRACTION: "Traction & Growth",
    FactCategory.TEAM: "Team & Organization",
    FactCategory.MARKET: "Market & Industry",
    FactCategory.PRODUCT: "Product & Technology",
    FactCategory.COMPETITION: "Competitive Landscape",
    FactCategory.LEGAL: "Legal & Compliance",
    FactCategory.OTHER: "Other Information",
}

SOURCE_LABELS: dict[FactSource, str] = {
    FactSource.DATA_ROOM: "Data Room",
    FactSource.BA_OVERRIDE: "Analyst Override",
    FactSource.FINANCIAL_MODEL: "Financial Model",
    FactSource.FOUNDER_RESPONSE: "Founder",
    FactSource.PITCH_DECK: "Pitch Deck",
    FactSource.CONTEXT_ENGINE: "Context Engine",
}

LOW_CONFIDENCE_THRESHOLD = 70


@dataclass
class _KeyState:
    events: list[FactEvent] = field(default_factory=list)
    current: FactEvent | None = None
    dispute: DisputeDetails | None = None


def _dispute_from(event: FactEvent) -> DisputeDetails:
    return DisputeDetails(
        conflicting_value=event.value,
        conflicting_display_value=event.display_value,
        conflicting_source=event.source,
        conflicting_event_id=event.id,
        related_fact_key=event.related_fact_key,
        reason=event.reason,
    )


def event_order(event: FactEvent) -> tuple[datetime, str]:
    return (event.created_at, event.id)


class FactReplay:
    """Incremental replay of one subject's ledger.

    Rules per key:
    - CREATED, SUPERSEDED: the event becomes the current value.
    - DISPUTED: opens a dispute against the current value, or becomes the
      current value (flagged) when the key had none.
    - RESOLVED: the event becomes the current value and closes the dispute.
    - DELETED: tombstone; the key drops out of the view.
    """

    def __init__(self, events: Iterable[FactEvent] = ()) -> None:
        self._keys: dict[str, _KeyState] = {}
        self.apply_all(sorted(events, key=event_order))

    def apply(self, event: FactEvent) -> None:
        state = self._keys.setdefault(event.fact_key, _KeyState())
        state.events.append(event)

        if event.event_type in (FactEventType.CREATED, FactEventType.SUPERSEDED):
            state.current = event
        elif event.event_type is FactEventType.DISPUTED:
            if state.current is None:
                state.current = event
            state.dispute = _dispute_from(event)
        elif event.event_type is FactEventType.RESOLVED:
            state.current = event
            state.dispute = None
        elif event.event_type is FactEventType.DELETED:
            state.current = None
            state.dispute = None

    def apply_all(self, events: Iterable[FactEvent]) -> None:
        for event in events:
            self.apply(event)

    def get(self, fact_key: str) -> CurrentFact | None:
        state = self._keys.get(fact_key)
        if state is None or state.current is None:
            return None
        return _build(state)

    def current(self) -> dict[str, CurrentFact]:
        return {
            key: _build(state)
            for key, state in sorted(self._keys.items())
            if state.current is not None
        }


def _build(state: _KeyState) -> CurrentFact:
    event = state.current
    assert event is not None
    return CurrentFact(
        subject_id=event.subject_id,
        fact_key=event.fact_key,
        category=event.category,
        current_value=event.value,
        current_display_value=event.display_value,
        current_source=event.source,
        current_confidence=event.source_confidence,
        current_event_id=event.id,
        unit=event.unit,
        is_disputed=state.dispute is not None,
        dispute_details=state.dispute,
        event_history=tuple(state.events),
        first_seen_at=state.events[0].created_at,
        last_updated_at=state.events[-1].created_at,
    )


def compute_current_facts(events: Iterable[FactEvent]) -> list[CurrentFact]:
    """Replay events into the current view, sorted by fact key."""
    return list(FactReplay(events).current().values())


# ---------------------------------------------------------------------------
# Queries over a view
# ---------------------------------------------------------------------------


def get_fact_value(facts: Iterable[CurrentFact], fact_key: str, default: Any = None) -> Any:
    for fact in facts:
        if fact.fact_key == fact_key:
            return fact.current_value
    return default


def facts_as_dict(facts: Iterable[CurrentFact]) -> dict[str, Any]:
    return {f.fact_key: f.current_value for f in facts}


def disputed_facts(facts: Iterable[CurrentFact]) -> list[CurrentFact]:
    return [f for f in facts if f.is_disputed]


@dataclass(frozen=True)
class FactCompleteness:
    complete: bool
    missing: tuple[str, ...]
    completeness: int


def check_fact_completeness(
    facts: Iterable[CurrentFact], required_keys: Sequence[str]
) -> FactCompleteness:
    """Which required keys are absent, and the present share as a percentage."""
    present = {f.fact_key for f in facts}
    missing = tuple(k for k in required_keys if k not in present)
    if not required_keys:
        return FactCompleteness(complete=True, missing=(), completeness=100)
    pct = round((len(required_keys) - len(missing)) / len(required_keys) * 100)
    return FactCompleteness(complete=not missing, missing=missing, completeness=pct)


@dataclass(frozen=True)
class FactSummary:
    total_facts: int
    by_category: dict[str, int]
    by_source: dict[str, int]
    average_confidence: int
    disputed_count: int
    low_confidence_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_facts": self.total_facts,
            "by_category": self.by_category,
            "by_source": self.by_source,
            "average_confidence": self.average_confidence,
            "disputed_count": self.disputed_count,
            "low_confidence_count": self.low_confidence_count,
        }


def fact_store_summary(facts: Sequence[CurrentFact]) -> FactSummary:
    by_category = Counter(f.category.value for f in facts)
    by_source = Counter(f.current_source.value for f in facts)
    total_confidence = sum(f.current_confidence for f in facts)
    return FactSummary(
        total_facts=len(facts),
        by_category=dict(by_category),
        by_source=dict(by_source),
        average_confidence=round(total_confidence / len(facts)) if facts else 0,
        disputed_count=sum(1 for f in facts if f.is_disputed),
        low_confidence_count=sum(
            1 for f in facts if f.current_confidence < LOW_CONFIDENCE_THRESHOLD
        ),
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_value(value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float)):
        return f"{value:,}"
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ", ".join(format_value(v) for v in value)
    return orjson.dumps(value, default=str).decode("utf-8")


def fact_label(fact_key: str) -> str:
    """Human label: the taxonomy description, else the key prettified."""
    definition = get_definition(fact_key)
    if definition is not None:
        return definition.description
    return " - ".join(part.replace("_", " ").title() for part in fact_key.split("."))


def format_facts_for_agents(facts: Sequence[CurrentFact]) -> str:
    """Render the view as Markdown for inclusion in agent prompts."""
    if not facts:
        return "## Fact Store\n\nNo facts have been extracted yet for this deal."

    lines: list[str] = ["## Fact Store", ""]

    for category, title in CATEGORY_TITLES.items():
        category_facts = [f for f in facts if f.category is category]
        if not category_facts:
            continue
        lines.append(f"### {title}")
        lines.append("")
        for fact in category_facts:
            line = f"- **{fact_label(fact.fact_key)}**: {fact.current_display_value}"
            if fact.current_confidence < 80:
                line += f" (confidence: {fact.current_confidence}%)"
            if fact.is_disputed:
                line += " [DISPUTED]"
            line += f" [{SOURCE_LABELS.get(fact.current_source, fact.current_source.value)}]"
            lines.append(line)
        lines.append("")

    disputed = disputed_facts(facts)
    if disputed:
        lines.append("### Disputed Facts (Require Verification)")
        lines.append("")
        for fact in disputed:
            details = fact.dispute_details
            assert details is not None
            conflict = f'"{format_value(details.conflicting_value)}" ({details.conflicting_source.value})'
            if details.related_fact_key:
                conflict += f" via {details.related_fact_key}"
            lines.append(
                f"- **{fact_label(fact.fact_key)}**: current value "
                f'"{format_value(fact.current_value)}" ({fact.current_source.value}) '
                f"conflicts with {conflict}"
            )
        lines.append("")

    return "\n".join(lines)


def format_facts_as_json(facts: Iterable[CurrentFact]) -> str:
    """Compact ``{category: {key: {...}}}`` JSON for structured prompts."""
    structured: dict[str, dict[str, dict[str, Any]]] = {}
    for fact in facts:
        entry: dict[str, Any] = {
            "value": fact.current_value,
            "display": fact.current_display_value,
            "confidence": fact.current_confidence,
            "source": fact.current_source.value,
        }
        if fact.is_disputed:
            entry["disputed"] = True
        structured.setdefault(fact.category.value, {})[fact.fact_key] = entry
    return orjson.dumps(structured, option=orjson.OPT_INDENT_2, default=str).decode("utf-8")
